# actions/registry.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional

if TYPE_CHECKING:
    from ..executor import RunnerContext


@dataclass(frozen=True)
class StepCall:
    """A step after interpolation: what an invoker actually receives."""
    name: str
    id: Optional[str] = None
    uses: Optional[str] = None
    run: Optional[str] = None
    params: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    shell: Optional[str] = None
    timeout: Optional[float] = None  # seconds

    @property
    def action_name(self) -> str:
        """`actions/checkout@v4` -> `actions/checkout`"""
        return (self.uses or "").split("@", 1)[0]


@dataclass
class InvocationResult:
    exit_code: int
    output: str = ""
    outputs: Dict[str, str] = field(default_factory=dict)


ActionHandler = Callable[[StepCall, "RunnerContext"], InvocationResult]


class ActionRegistry:
    """
    Maps action names (without version) to handlers.

        registry = default_registry()
        registry.register("crate-ci/typos", my_typos_handler)
    """

    def __init__(self, *, stub_unknown: bool = False):
        self._handlers: Dict[str, ActionHandler] = {}
        self.stub_unknown = stub_unknown

    def register(self, name: str, handler: ActionHandler) -> None:
        self._handlers[name.split("@", 1)[0]] = handler

    def get(self, name: str) -> Optional[ActionHandler]:
        return self._handlers.get(name.split("@", 1)[0])

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def invoke(self, call: StepCall, ctx: "RunnerContext") -> InvocationResult:
        handler = self.get(call.action_name)
        if handler is not None:
            return handler(call, ctx)
        if self.stub_unknown:
            ctx.console.print_warning(f"[{ctx.instance.key}] action {call.uses} is not available locally; treating as success")
            return InvocationResult(exit_code=0, output=f"stubbed action {call.uses}")
        return InvocationResult(
            exit_code=127,
            output=f"action {call.uses} is not available (register a handler or run with --stub-actions)",
        )


def default_registry(*, stub_unknown: bool = False) -> ActionRegistry:
    from .cache import cache_action
    from .checkout import checkout_action

    registry = ActionRegistry(stub_unknown=stub_unknown)
    registry.register("actions/checkout", checkout_action)
    registry.register("actions/cache", cache_action)
    return registry
