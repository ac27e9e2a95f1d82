"""Locate the enclosing git repository without running git."""

from __future__ import annotations

import os
import stat
import subprocess

_GIT_DIR_MARKERS = ("HEAD", "objects", "refs")


def git_rel_workdir() -> str:
    """Return the current directory relative to the repository root.

    The result matches ``git rev-parse --show-prefix``: empty at the root,
    otherwise the relative path with a trailing separator.
    """
    cwd = os.getcwd()
    root = find_git_root(cwd)
    if not cwd.startswith(root):
        raise ValueError(f"cannot get GitRelWorkdir: cwd={cwd!r}, root={root!r}")
    relative = cwd[len(root):].strip(os.sep)
    return relative + os.sep if relative else ""


def get_git_root() -> str:
    """Return the root directory of the repository holding the current directory."""
    return find_git_root(os.getcwd())


def git_command_exists() -> bool:
    """Tell whether a working ``git`` command is available."""
    try:
        completed = subprocess.run(
            ["git", "-v"], capture_output=True, check=False
        )
    except OSError:
        return False
    return completed.returncode == 0


def find_git_root(path: str) -> str:
    """Return the repository root for ``path``, searching its parents."""
    return os.path.dirname(_find_dot_git_path(path))


def _exists(path: str) -> bool:
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    return True


def _is_git_dir(path: str) -> bool:
    return all(_exists(os.path.join(path, marker)) for marker in _GIT_DIR_MARKERS)


def _find_dot_git_path(path: str) -> str:
    path = os.path.abspath(path)
    while True:
        candidate = os.path.join(path, ".git")
        try:
            info = os.stat(candidate)
        except FileNotFoundError:
            pass
        else:
            if not stat.S_ISDIR(info.st_mode):
                raise NotADirectoryError(".git exist but is not a directory")
            return candidate

        if _is_git_dir(path):
            return path

        parent = os.path.dirname(path)
        if parent == path:
            raise FileNotFoundError(".git not found")
        path = parent