from __future__ import annotations

import subprocess
from pathlib import Path


def detect_git_branch(directory: Path | str) -> str | None:
    """Current branch of the repository containing `directory`, if any."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=str(directory),
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return None

    if result.returncode != 0:
        return None
    branch = result.stdout.strip()
    return branch or None
