"""Running external command-line tools."""

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


def require_executable(name: str) -> str:
    """Absolute path of ``name`` on PATH.

    Raises:
        FileNotFoundError: If the executable cannot be found
    """
    path = shutil.which(name)
    if path is None:
        raise FileNotFoundError(
            f"Required executable '{name}' not found on PATH"
        )
    return path


def run_cmd(
    *,
    cmd: Sequence[str],
    log_file: Path,
    logger: Optional[logging.Logger] = logger,
) -> None:
    """Run a command with stdout/stderr appended to a step log.

    The command runs without a shell. The step log starts with the command
    line so failed runs can be reproduced by hand.

    Args:
        cmd: Command tokens
        log_file: Step-specific log file (parent directories are created)
        logger: Logger for the command line and failures

    Raises:
        subprocess.CalledProcessError: If the command exits non-zero
    """
    cmd_list: List[str] = [str(c) for c in cmd]
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    if logger is not None:
        logger.info("Running: %s", " ".join(cmd_list))
        logger.debug("Step log: %s", log_file)

    with log_file.open("a", encoding="utf-8") as lf:
        lf.write("$ " + " ".join(cmd_list) + "\n")
        lf.flush()
        try:
            subprocess.run(cmd_list, stdout=lf, stderr=lf, check=True)
        except subprocess.CalledProcessError as exc:
            if logger is not None:
                logger.error(
                    "Command failed with exit code %s; see %s",
                    exc.returncode,
                    log_file,
                )
            raise
