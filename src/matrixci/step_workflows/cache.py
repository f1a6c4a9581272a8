# step_workflows/cache.py
from __future__ import annotations

import tarfile
from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Sequence

from ..model import CacheSpec, Step, StepResult
from ..ui.console import get_console

if TYPE_CHECKING:
    from ..executor import StepContext


# ---------------------------------------------------------------------
# Cache step helper
# ---------------------------------------------------------------------

def cache_step(
    name: str,
    key: str,
    *,
    path: Sequence[str] | str,
    restore_keys: Sequence[str] | str = (),
    id: str | None = None,
    condition: str | None = None,
) -> Step:
    """
    Restore a cache now and save it when the job succeeds.

    `key` and `restore_keys` may use ${{ }} (matrix values, earlier step
    outputs). Multi-line strings are split one entry per line.
    Outputs: cache-hit ('true' only for an exact key match), cache-key.
    """
    spec = CacheSpec(
        key=key.strip(),
        restore_keys=tuple(_lines(restore_keys)),
        paths=tuple(_lines(path)),
    )
    return Step(
        name=name,
        action=CacheAction(spec),
        id=id,
        condition=condition,
        outputs=("cache-hit", "cache-key"),
    )


def _lines(value: Sequence[str] | str) -> List[str]:
    if isinstance(value, str):
        return [line.strip() for line in value.splitlines() if line.strip()]
    return [v.strip() for v in value if v.strip()]


# ---------------------------------------------------------------------
# Cache step execution
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheAction:
    spec: CacheSpec

    def templates(self) -> List[str]:
        return [self.spec.key, *self.spec.restore_keys, *self.spec.paths]

    def execute(self, ctx: StepContext) -> StepResult:
        console = get_console()
        key = ctx.render(self.spec.key)
        prefixes = [ctx.render(p) for p in self.spec.restore_keys]
        paths = [ctx.render(p) for p in self.spec.paths]

        if ctx.cache is None:
            console.print_cache(ctx.instance_id, "disabled")
            return StepResult.ok(**{"cache-hit": "false", "cache-key": ""})

        try:
            hit = ctx.cache.restore(key, prefixes, root=ctx.workspace)
        except (tarfile.TarError, OSError, ValueError) as e:
            # a broken entry is treated as a miss; the job never blocks on the cache
            console.print_warning(f"[{ctx.instance_id}] cache restore failed for {key}: {e}")
            hit = None

        if hit is not None and hit.hit:
            console.print_cache(ctx.instance_id, hit.reason)
        else:
            console.print_cache(ctx.instance_id, "miss")

        exact = hit is not None and hit.exact
        if not exact:
            ctx.add_post(f"save cache {key}", lambda: self._save(ctx, key, paths))

        return StepResult.ok(**{
            "cache-hit": "true" if exact else "false",
            "cache-key": hit.key if hit is not None else "",
        })

    @staticmethod
    def _save(ctx: StepContext, key: str, paths: List[str]) -> None:
        saved = ctx.cache.save_paths(key, paths, root=ctx.workspace)
        get_console().print_cache(ctx.instance_id, f"saved ({key})" if saved else f"exists ({key}), not saved")
