"""Per-task workspace directory resolution."""

from __future__ import annotations

import hashlib
import re
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_DIGEST_SUFFIX = re.compile(r"-[0-9a-f]{10}$")
_MAX_NAME_CHARS = 100


class TaskWorkspaceManager:
    """Creates deterministic per-task workspace directories."""

    def __init__(self, root_dir: Path) -> None:
        self.root_dir = root_dir

    def resolve(self, *, task_id: str, requested_path: str | None = None) -> Path:
        """Return the workspace for a task, creating the directory if needed."""

        if requested_path:
            workspace = Path(requested_path).expanduser()
        else:
            workspace = self.root_dir / workspace_dir_name(task_id)
        workspace.mkdir(parents=True, exist_ok=True)
        return workspace.resolve()


def workspace_dir_name(task_id: str) -> str:
    """Filesystem-safe directory name, distinct for every task id.

    Ids that are already safe are used as is. Anything that had to be
    rewritten gets a digest of the original id appended, and so does a safe
    id that happens to end in such a digest.
    """

    name = _UNSAFE_CHARS.sub("_", task_id).strip("._")[:_MAX_NAME_CHARS]
    if name and name == task_id and not _DIGEST_SUFFIX.search(name):
        return name
    digest = hashlib.sha256(task_id.encode("utf-8")).hexdigest()[:10]
    return f"{name or 'task'}-{digest}"
