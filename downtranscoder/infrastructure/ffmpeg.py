import os
import re
import shutil
import logging
import queue
import subprocess
import tempfile
import threading
import time
from collections import deque
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict
from downtranscoder.config.models import AppConfig
from downtranscoder.domain.models import MediaType, TranscodePreset, TranscodeResult
from downtranscoder.domain.errors import (
    DownTranscoderError,
    OutputMissing,
    ProcessFailed,
    ProcessStartError,
    ProcessTimeout,
    StorageInaccessible,
    ToolUnavailable,
    TranscodeCancelled,
)
from downtranscoder.infrastructure.ffprobe import FFprobeAdapter

CODEC_NAMES = {
    "H264": "libx264",
    "H265": "libx265",
    "VP9": "libvpx-vp9",
    "AV1": "libaom-av1",
}
DEFAULT_CODEC_NAME = "libx265"

PRESETS = {
    TranscodePreset.H265_CRF23: ("H265", 23),
    TranscodePreset.H265_CRF26: ("H265", 26),
    TranscodePreset.H265_CRF28: ("H265", 28),
    TranscodePreset.H264_CRF23: ("H264", 23),
}

FALLBACK_PREFIX = "downtranscoder-"
COPY_CHUNK_SIZE = 8 * 1024 * 1024
POLL_INTERVAL_S = 0.1
TERMINATE_GRACE_S = 3
CANCEL_CHECK_INTERVAL_S = 1.0

# 'out_time=00:01:02.500000' from -progress, 'time=00:01:02.50' from the stats line
TIME_REGEX = re.compile(r"(?<![\w])(?:out_)?time=(\d+):(\d+):(\d+(?:\.\d+)?)")
# key=value records of the -progress stream; not useful as error output
PROGRESS_RECORD_REGEX = re.compile(r"^[a-z_0-9]+=\S*$")


def codec_name(codec: str) -> str:
    return CODEC_NAMES.get(codec.upper(), DEFAULT_CODEC_NAME)


def image_q_value(quality: int) -> int:
    """Maps 1-100 quality (higher is better) to ffmpeg's -q:v 1-31 (lower is better)."""
    return int((100 - quality) / 100 * 30) + 1


def build_scale_filter(max_width: int, max_height: int, free_side: int = -2) -> Optional[str]:
    """Downscale-only scale filter; never enlarges the input."""
    if max_width > 0 and max_height > 0:
        return f"scale='min({max_width},iw)':'min({max_height},ih)':force_original_aspect_ratio=decrease"
    if max_width > 0:
        return f"scale='min({max_width},iw)':{free_side}"
    if max_height > 0:
        return f"scale={free_side}:'min({max_height},ih)'"
    return None


class TranscodeRequest(BaseModel):
    """Everything one ffmpeg run needs to know about its input and output."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    media_type: MediaType
    output_path: Path
    local_path: Optional[Path] = None
    expected_size: Optional[int] = None
    open_stream: Optional[Callable[[], BinaryIO]] = None
    preset: Optional[TranscodePreset] = None
    cancel_event: Optional[threading.Event] = None
    # Polled while ffmpeg runs; lets an abort issued by another process stop it
    is_cancelled: Optional[Callable[[], bool]] = None


class FFmpegTranscoder:
    """Wrapper around ffmpeg for shrinking one video or image."""

    def __init__(self, config: AppConfig, ffprobe_adapter: Optional[FFprobeAdapter] = None):
        self.config = config
        self.ffmpeg_bin = config.general.ffmpeg_bin
        self.ffprobe_adapter = ffprobe_adapter or FFprobeAdapter(config.general.ffprobe_bin)
        self.logger = logging.getLogger(__name__)
        self._progress_callback: Optional[Callable[[int], None]] = None
        self._last_error: Optional[str] = None

    def set_progress_callback(self, callback: Optional[Callable[[int], None]]) -> None:
        self._progress_callback = callback

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def is_available(self) -> bool:
        """Version probe: ffmpeg is usable when `ffmpeg -version` exits with 0."""
        try:
            result = subprocess.run([self.ffmpeg_bin, "-version"], capture_output=True)
        except OSError:
            return False
        return result.returncode == 0

    # -- command construction ---------------------------------------------

    def resolve_video_settings(self, preset: Optional[TranscodePreset]) -> Tuple[str, int]:
        """Returns (ffmpeg codec name, crf) for a preset, or the configured defaults."""
        if preset is not None and preset in PRESETS:
            codec, crf = PRESETS[preset]
            return codec_name(codec), crf
        return codec_name(self.config.video.codec), self.config.video.crf

    def build_video_command(
        self,
        input_path: Path,
        output_path: Path,
        preset: Optional[TranscodePreset] = None,
        with_progress: bool = True,
    ) -> List[str]:
        """Constructs the ffmpeg command line arguments for a video."""
        video = self.config.video
        codec, crf = self.resolve_video_settings(preset)

        cmd = [self.ffmpeg_bin, "-y", "-nostdin"]
        if with_progress:
            cmd.extend(["-progress", "pipe:1", "-nostats"])
        cmd.extend(["-i", str(input_path)])
        if video.max_threads:
            cmd.extend(["-threads", str(video.max_threads)])
        cmd.extend(["-c:v", codec, "-crf", str(crf)])

        scale = build_scale_filter(video.max_width, video.max_height, free_side=-2)
        if scale:
            cmd.extend(["-vf", scale])

        cmd.extend([
            "-c:a", "copy",
            "-movflags", "+faststart",
            str(output_path),
        ])
        return cmd

    def build_image_command(self, input_path: Path, output_path: Path) -> List[str]:
        """Constructs the ffmpeg command line arguments for an image."""
        image = self.config.image
        cmd = [self.ffmpeg_bin, "-y", "-nostdin", "-i", str(input_path)]
        scale = build_scale_filter(image.max_width, image.max_height, free_side=-1)
        if scale:
            cmd.extend(["-vf", scale])
        cmd.extend(["-q:v", str(image_q_value(image.quality)), str(output_path)])
        return cmd

    # -- input resolution -------------------------------------------------

    def _direct_access_ok(self, request: TranscodeRequest) -> bool:
        path = request.local_path
        if path is None:
            return False
        try:
            if not path.is_file() or not os.access(path, os.R_OK):
                return False
            if request.expected_size is not None and path.stat().st_size != request.expected_size:
                self.logger.warning(
                    f"Size mismatch for {request.name}: catalog={request.expected_size}, "
                    f"disk={path.stat().st_size}; using a temporary copy"
                )
                return False
        except OSError as e:
            self.logger.warning(f"Direct access to {path} failed: {e}")
            return False
        return True

    @contextmanager
    def _input_file(self, request: TranscodeRequest) -> Iterator[Tuple[Path, bool]]:
        """Yields (usable local input path, used fallback copy).

        The fallback copy is streamed in chunks into a temporary file and removed
        on every exit path.
        """
        if self._direct_access_ok(request):
            yield request.local_path, False
            return

        if request.open_stream is None:
            raise StorageInaccessible(request.name, "no local path and no readable stream")

        suffix = Path(request.name).suffix
        tmp_path: Optional[Path] = None
        try:
            with tempfile.NamedTemporaryFile(
                prefix=FALLBACK_PREFIX,
                suffix=suffix,
                dir=self.config.general.temp_dir,
                delete=False,
            ) as tmp:
                tmp_path = Path(tmp.name)
                with request.open_stream() as stream:
                    shutil.copyfileobj(stream, tmp, COPY_CHUNK_SIZE)
        except BaseException as e:
            if tmp_path is not None and tmp_path.exists():
                tmp_path.unlink()
            if isinstance(e, OSError):
                raise StorageInaccessible(request.name, str(e)) from e
            raise

        self.logger.info(f"Using temporary copy for {request.name}: {tmp_path}")
        try:
            yield tmp_path, True
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    # -- process control --------------------------------------------------

    def _stop_process(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=TERMINATE_GRACE_S)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def _report_progress(self, percent: int) -> None:
        if self._progress_callback is not None:
            self._progress_callback(percent)

    def _execute(
        self,
        cmd: List[str],
        output_path: Path,
        duration: Optional[float],
        cancel_event: Optional[threading.Event],
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> None:
        """Runs ffmpeg to completion; raises a DownTranscoderError on failure."""
        self.logger.debug(f"FFMPEG_CMD: {' '.join(cmd)}")
        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                universal_newlines=True,
                bufsize=1,
            )
        except OSError as e:
            raise ProcessStartError(f"ffmpeg could not be started: {e}") from e

        output_queue: "queue.Queue[Optional[str]]" = queue.Queue()
        tail: deque = deque(maxlen=20)

        def _reader():
            if not process.stdout:
                output_queue.put(None)
                return
            for line in process.stdout:
                output_queue.put(line)
            output_queue.put(None)

        reader_thread = threading.Thread(target=_reader, daemon=True)
        reader_thread.start()

        timeout_s = self.config.general.process_timeout_s
        deadline = time.monotonic() + timeout_s if timeout_s else None
        last_percent = 0
        next_cancel_check = time.monotonic()

        while True:
            cancelled = cancel_event is not None and cancel_event.is_set()
            if not cancelled and is_cancelled is not None and time.monotonic() >= next_cancel_check:
                next_cancel_check = time.monotonic() + CANCEL_CHECK_INTERVAL_S
                cancelled = is_cancelled()
            if cancelled:
                self.logger.info(f"FFMPEG_INTERRUPTED: {output_path.name} (abort requested)")
                self._stop_process(process)
                raise TranscodeCancelled()

            if deadline is not None and time.monotonic() > deadline:
                self.logger.error(f"FFMPEG_TIMEOUT: {output_path.name} after {timeout_s}s")
                self._stop_process(process)
                raise ProcessTimeout(timeout_s)

            try:
                line = output_queue.get(timeout=POLL_INTERVAL_S)
            except queue.Empty:
                if process.poll() is not None and not reader_thread.is_alive():
                    break
                continue

            if line is None:
                break

            stripped = line.strip()
            if stripped and not PROGRESS_RECORD_REGEX.match(stripped):
                tail.append(stripped)

            if not duration:
                continue
            match = TIME_REGEX.search(line)
            if match:
                h, m, s = match.groups()
                elapsed = int(h) * 3600 + int(m) * 60 + float(s)
                percent = min(99, int(elapsed / duration * 100))
                if percent > last_percent:
                    last_percent = percent
                    self._report_progress(percent)

        process.wait()

        if process.returncode != 0:
            raise ProcessFailed(process.returncode, "\n".join(tail))
        if not output_path.exists():
            raise OutputMissing(str(output_path))

    # -- public entry point -----------------------------------------------

    def run(self, request: TranscodeRequest) -> TranscodeResult:
        """Transcodes one file. Failures come back as a result, not an exception.

        Only ProcessStartError (ffmpeg present but not startable) is re-raised,
        since it affects every item that would follow.
        """
        self._last_error = None
        output_path = request.output_path
        start_time = time.monotonic()

        try:
            if not self.is_available():
                raise ToolUnavailable(self.ffmpeg_bin)

            output_path.parent.mkdir(parents=True, exist_ok=True)
            with self._input_file(request) as (input_path, used_fallback):
                input_size = input_path.stat().st_size
                if request.media_type == MediaType.VIDEO:
                    duration = self.ffprobe_adapter.get_duration(input_path)
                    if duration is None:
                        self.logger.info(f"No duration for {request.name}; progress reporting disabled")
                    cmd = self.build_video_command(
                        input_path, output_path, request.preset, with_progress=duration is not None
                    )
                else:
                    duration = None
                    cmd = self.build_image_command(input_path, output_path)

                self.logger.info(f"FFMPEG_START: {request.name} ({request.media_type.value})")
                self._execute(cmd, output_path, duration, request.cancel_event, request.is_cancelled)

            self._report_progress(100)
            output_size = output_path.stat().st_size
            self._log_reduction(request, input_size, output_size, time.monotonic() - start_time)
            return TranscodeResult(
                success=True,
                output_path=str(output_path),
                input_size=input_size,
                output_size=output_size,
                used_fallback_copy=used_fallback,
            )
        except DownTranscoderError as e:
            self._last_error = e.reason
            self.logger.error(f"FFMPEG_FAILED: {request.name}: {e.reason}")
            self._remove_partial_output(output_path)
            if isinstance(e, ProcessStartError):
                raise
            return TranscodeResult(success=False, error_kind=e.kind, error_message=e.reason)

    def _remove_partial_output(self, output_path: Path) -> None:
        try:
            if output_path.exists():
                output_path.unlink()
        except OSError as e:
            self.logger.warning(f"Could not remove partial output {output_path}: {e}")

    def _log_reduction(self, request: TranscodeRequest, input_size: int, output_size: int, elapsed: float) -> None:
        reduction = ((input_size - output_size) / input_size) * 100 if input_size else 0.0
        self.logger.info(
            f"FFMPEG_END: {request.name} status=completed elapsed={elapsed:.2f}s "
            f"reduction={reduction:.2f}% ({input_size / (1024 * 1024):.2f} MB -> {output_size / (1024 * 1024):.2f} MB)"
        )
