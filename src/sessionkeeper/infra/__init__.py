"""Process supervision and on-disk capture plumbing.

Public API: CapturedOutput, ProcessGroup, Spawn, ensure_dir, pipe_sync,
    read_log_lines, write_atomic
Internal: fs, log_capture, process_group
"""

from sessionkeeper.infra.fs import ensure_dir, write_atomic
from sessionkeeper.infra.log_capture import pipe_sync, read_log_lines
from sessionkeeper.infra.process_group import CapturedOutput, ProcessGroup, Spawn

__all__ = [
    "CapturedOutput",
    "ProcessGroup",
    "Spawn",
    "ensure_dir",
    "pipe_sync",
    "read_log_lines",
    "write_atomic",
]
