"""Tests for SRT serialization and the burn-in filter."""

import pytest

from src.render.subtitles import build_srt, format_srt_timestamp, subtitles_filter, write_srt
from src.schemas.recording import SubtitleCue


@pytest.mark.parametrize(
    "seconds,expected",
    [
        (0, "00:00:00,000"),
        (1.5, "00:00:01,500"),
        (3661.25, "01:01:01,250"),
        (-2, "00:00:00,000"),
    ],
)
def test_format_srt_timestamp(seconds, expected):
    assert format_srt_timestamp(seconds) == expected


class TestBuildSrt:
    def test_cues_are_numbered_in_order(self):
        cues = [
            SubtitleCue(text=" Hello ", start_time=0, end_time=1.5),
            SubtitleCue(text="World", start_time=2, end_time=3),
        ]

        assert build_srt(cues) == (
            "1\n00:00:00,000 --> 00:00:01,500\nHello\n"
            "\n"
            "2\n00:00:02,000 --> 00:00:03,000\nWorld\n"
        )

    def test_empty(self):
        assert build_srt([]) == ""

    def test_write_srt(self, tmp_path):
        path = write_srt([SubtitleCue(text="Hi", start_time=0, end_time=1)], tmp_path / "subs.srt")
        assert path.read_text(encoding="utf-8").startswith("1\n00:00:00,000 --> 00:00:01,000\nHi")


class TestSubtitlesFilter:
    def test_plain_path(self):
        assert subtitles_filter("/tmp/work/subtitles.srt") == "subtitles=filename='/tmp/work/subtitles.srt'"

    def test_special_characters_are_escaped(self):
        assert subtitles_filter("C:/it's/subs.srt") == "subtitles=filename='C\\:/it\\'s/subs.srt'"
