# actions/cache.py
from __future__ import annotations

from typing import TYPE_CHECKING

from ..cache import CacheKey, CacheKeyResolver
from .registry import InvocationResult, StepCall

if TYPE_CHECKING:
    from ..executor import RunnerContext


def _save(ctx: "RunnerContext", cache_key: CacheKey) -> None:
    if ctx.cache.save(cache_key, ctx.workspace):
        ctx.console.print_cache_saved(ctx.instance.key, cache_key.key)
    else:
        ctx.console.print_debug(f"[{ctx.instance.key}] cache entry {cache_key.key} not saved (exists or backend error)")


def cache_action(call: StepCall, ctx: "RunnerContext") -> InvocationResult:
    """
    with:
      path:         newline separated paths to restore/save
      key:          primary key (exact match)
      restore-keys: optional newline separated prefixes, tried in order

    outputs:
      cache-hit: "true" only on an exact key match

    On anything but an exact hit, the paths are saved under `key` after the
    job succeeds.
    """
    if not call.params.get("key") or not call.params.get("path"):
        return InvocationResult(exit_code=1, output="actions/cache requires 'key' and 'path'")

    resolver = CacheKeyResolver(ctx.expression_context())
    cache_key = resolver.resolve(
        call.params["key"],
        call.params["path"],
        call.params.get("restore-keys", ""),
    )

    if ctx.cache is None:
        return InvocationResult(exit_code=0, output="caching disabled", outputs={"cache-hit": "false"})

    hit = ctx.cache.restore(cache_key, ctx.workspace)
    if hit.hit:
        ctx.console.print_cache_hit(ctx.instance.key, hit.key, exact=hit.exact)
    else:
        ctx.console.print_cache_miss(ctx.instance.key, cache_key.key)

    if not hit.exact:
        ctx.add_post_hook(f"save cache {cache_key.key}", lambda: _save(ctx, cache_key))

    return InvocationResult(
        exit_code=0,
        output=hit.reason,
        outputs={
            "cache-hit": "true" if hit.exact else "false",
            "cache-primary-key": cache_key.key,
            "cache-matched-key": hit.key,
        },
    )
