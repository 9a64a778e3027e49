from downtranscoder.infrastructure.ffmpeg import FALLBACK_PREFIX
from downtranscoder.infrastructure.housekeeping import HousekeepingService

def test_cleanup_removes_only_fallback_copies(tmp_path):
    (tmp_path / f"{FALLBACK_PREFIX}abc.mkv").write_text("partial copy")
    (tmp_path / f"{FALLBACK_PREFIX}def.jpg").write_text("partial copy")
    (tmp_path / "movie.mkv.transcoded.mkv").write_text("finished output")
    (tmp_path / "unrelated.tmp").write_text("data")
    (tmp_path / f"{FALLBACK_PREFIX}dir").mkdir()

    removed = HousekeepingService().cleanup_fallback_copies(tmp_path)

    assert removed == 2
    assert sorted(p.name for p in tmp_path.iterdir()) == [
        f"{FALLBACK_PREFIX}dir", "movie.mkv.transcoded.mkv", "unrelated.tmp",
    ]

def test_cleanup_empty_directory(tmp_path):
    assert HousekeepingService().cleanup_fallback_copies(tmp_path) == 0
