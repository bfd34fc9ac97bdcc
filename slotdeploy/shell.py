import logging
import shlex
import subprocess
from pathlib import Path

from slotdeploy.errors import CommandError

logger = logging.getLogger(__name__)


def run_command(
    cmd, timeout: int = 30, check: bool = True, cwd: str | Path | None = None
) -> subprocess.CompletedProcess:
    if isinstance(cmd, str):
        cmd_list = shlex.split(cmd)
        cmd_str = cmd
    else:
        cmd_list = [str(c) for c in cmd]
        cmd_str = " ".join(cmd_list)

    logger.debug(f"  $ {cmd_str}")
    try:
        result = subprocess.run(
            cmd_list,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=str(cwd) if cwd is not None else None,
        )
    except subprocess.TimeoutExpired:
        raise CommandError(cmd_str, None)
    except OSError as e:
        # Missing binary behaves like a failed command.
        raise CommandError(cmd_str, 127, str(e))

    if check and result.returncode != 0:
        logger.error(
            f"  Command failed (rc={result.returncode}): {result.stderr.strip()}"
        )
        raise CommandError(cmd_str, result.returncode, result.stderr.strip())
    return result
