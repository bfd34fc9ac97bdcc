"""
Disk preflight and best-effort cleanup.

Steps that are allowed to fail (cache cleanup, temp removal, pm2 save,
pruning) never vanish silently: each returns a StepReport that is logged
and carried on the deployment result.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

import psutil

from slotdeploy.errors import DeploymentError, PreflightError
from slotdeploy.shell import run_command

logger = logging.getLogger(__name__)

GB = 1024 ** 3


@dataclass(frozen=True)
class StepReport:
    name: str
    ok: bool
    detail: str = ""


def best_effort(name: str, fn, *args, **kwargs) -> StepReport:
    try:
        result = fn(*args, **kwargs)
    except (DeploymentError, OSError) as e:
        logger.warning(f"  {name} failed (ignored): {e}")
        return StepReport(name, False, str(e))
    detail = "" if result is None else str(result)
    logger.debug(f"  {name}: ok {detail}".rstrip())
    return StepReport(name, True, detail)


def free_space_gb(path: Path) -> float:
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    return psutil.disk_usage(str(path)).free / GB


def clear_dir(path: Path) -> int:
    """Remove everything inside ``path``; returns the number of entries removed."""
    path = Path(path)
    if not path.is_dir():
        return 0
    count = 0
    for child in path.iterdir():
        if child.is_dir() and not child.is_symlink():
            shutil.rmtree(child)
        else:
            child.unlink()
        count += 1
    return count


def run_cleanup_commands(commands: list[str], runner=run_command, timeout: int = 30) -> list[StepReport]:
    return [best_effort(cmd, runner, cmd, timeout=timeout) for cmd in commands]


def disk_preflight(
    base_dir: Path,
    min_free_gb: float,
    reclaim,
    commands: list[str],
    runner=run_command,
    timeout: int = 30,
    free_space=free_space_gb,
) -> list[StepReport]:
    """Make sure ``base_dir`` has room for another release.

    When space is short, ``reclaim`` (release pruning) and the cleanup
    commands are tried before giving up with PreflightError.
    """
    free = free_space(base_dir)
    logger.info(f"  Available space: {free:.1f}GB")
    if free >= min_free_gb:
        return []

    logger.warning(f"  Less than {min_free_gb}GB free, cleaning up...")
    reports = [best_effort("prune releases", reclaim)]
    reports.extend(run_cleanup_commands(commands, runner=runner, timeout=timeout))

    free = free_space(base_dir)
    logger.info(f"  Space after cleanup: {free:.1f}GB")
    if free < min_free_gb:
        raise PreflightError(
            f"Insufficient disk space: {free:.1f}GB free, {min_free_gb}GB required"
        )
    return reports
