import pytest
from pathlib import Path
from unittest.mock import patch
from downtranscoder.infrastructure.ffprobe import FFprobeAdapter

def test_ffprobe_duration():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = "125.480000\n"
        mock_run.return_value.returncode = 0

        adapter = FFprobeAdapter()
        assert adapter.get_duration(Path("movie.mkv")) == pytest.approx(125.48)

        cmd = mock_run.call_args[0][0]
        assert cmd[0] == "ffprobe"
        assert "format=duration" in cmd
        assert cmd[-1] == "movie.mkv"

@pytest.mark.parametrize("stdout", ["N/A\n", "", "0.000000\n"])
def test_ffprobe_unusable_duration(stdout):
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.stdout = stdout
        mock_run.return_value.returncode = 0
        assert FFprobeAdapter().get_duration(Path("movie.mkv")) is None

def test_ffprobe_error():
    with patch("subprocess.run") as mock_run:
        mock_run.return_value.returncode = 1
        mock_run.return_value.stderr = "movie.mkv: No such file or directory"
        assert FFprobeAdapter().get_duration(Path("movie.mkv")) is None

def test_ffprobe_missing_binary():
    with patch("subprocess.run", side_effect=FileNotFoundError("ffprobe")):
        assert FFprobeAdapter("/nope/ffprobe").get_duration(Path("movie.mkv")) is None
