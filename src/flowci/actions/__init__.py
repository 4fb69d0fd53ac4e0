from .registry import ActionRegistry, InvocationResult, StepCall, default_registry

__all__ = ["ActionRegistry", "InvocationResult", "StepCall", "default_registry"]
