"""Error taxonomy for scanning, dispatching and transcoding.

Every error carries a human-readable ``reason``. When an item is aborted the
reason is stored as its ``abort_reason``, so it has to make sense to someone
looking at the board without access to the server logs.
"""

from typing import Optional


class DownTranscoderError(Exception):
    """Base class for all DownTranscoder errors."""

    kind = "error"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ToolUnavailable(DownTranscoderError):
    """ffmpeg is missing; fatal for one run, not for the batch."""

    kind = "tool_unavailable"

    def __init__(self, tool: str = "ffmpeg"):
        super().__init__(
            f"{tool} is not installed or not on PATH. "
            f"Install {tool} on the server and queue the item again."
        )
        self.tool = tool


class InputNotFound(DownTranscoderError):
    """The file referenced by a catalog item no longer resolves in the store."""

    kind = "input_not_found"

    def __init__(self, name: str, file_id: Optional[int] = None):
        ref = f"'{name}'" if file_id is None else f"'{name}' (file id {file_id})"
        super().__init__(
            f"File {ref} was not found in storage. It may have been deleted or moved, "
            "or it lives on external storage that is currently unmounted. "
            "Check that the storage is mounted and run a new scan."
        )
        self.name = name
        self.file_id = file_id


class StorageInaccessible(DownTranscoderError):
    """Neither direct access nor the temporary fallback copy worked."""

    kind = "storage_inaccessible"

    def __init__(self, name: str, detail: str):
        super().__init__(
            f"Could not read '{name}' directly or copy it to a temporary file: {detail}. "
            "If the file is on external storage, make sure it is mounted and readable "
            "and that the temporary directory has enough free space."
        )
        self.name = name
        self.detail = detail


class ProcessFailed(DownTranscoderError):
    """ffmpeg exited with a non-zero code."""

    kind = "process_failed"

    def __init__(self, exit_code: int, output: str = ""):
        last_line = output.strip().splitlines()[-1] if output.strip() else ""
        reason = f"ffmpeg exited with code {exit_code}"
        if last_line:
            reason = f"{reason}: {last_line}"
        super().__init__(reason)
        self.exit_code = exit_code
        self.output = output


class OutputMissing(DownTranscoderError):
    """ffmpeg exited with 0 but produced no output file."""

    kind = "output_missing"

    def __init__(self, output_path: str):
        super().__init__(f"ffmpeg finished but the output file was not created: {output_path}")
        self.output_path = output_path


class ProcessStartError(DownTranscoderError):
    """ffmpeg is installed but the process could not be started at all."""

    kind = "process_start_error"


class ProcessTimeout(DownTranscoderError):
    kind = "process_timeout"

    def __init__(self, timeout_s: float):
        super().__init__(f"ffmpeg did not finish within {timeout_s:.0f}s and was terminated")
        self.timeout_s = timeout_s


class TranscodeCancelled(DownTranscoderError):
    kind = "cancelled"

    def __init__(self, reason: str = "Transcoding was aborted by the user"):
        super().__init__(reason)


class AccessDenied(DownTranscoderError):
    """Ownership mismatch when mutating an item. Never retried."""

    kind = "access_denied"

    def __init__(self, item_id: int):
        super().__init__(f"Access denied to media item {item_id}")
        self.item_id = item_id


class ItemNotFound(DownTranscoderError):
    kind = "item_not_found"

    def __init__(self, item_id: int):
        super().__init__(f"Media item {item_id} does not exist")
        self.item_id = item_id


class InvalidStateTransition(DownTranscoderError):
    kind = "invalid_transition"

    def __init__(self, item_id: int, current: str, target: str):
        super().__init__(f"Media item {item_id} cannot move from '{current}' to '{target}'")
        self.item_id = item_id
        self.current = current
        self.target = target


class ScanInProgress(DownTranscoderError):
    kind = "scan_in_progress"

    def __init__(self):
        super().__init__("Scan already in progress")


class OwnerEnumerationError(DownTranscoderError):
    """The list of owners could not be obtained; fatal for the whole scan."""

    kind = "owner_enumeration"
