from src.render.encode_profiles import PROFILES, estimate_export_seconds, get_profile, resolve_encode_settings
from src.render.engine import MediaTransformEngine, build_export_args
from src.render.ffmpeg import FFmpegRunner
from src.render.filter_graph import FilterGraph, build_filter_graph
from src.render.subtitles import build_srt, format_srt_timestamp

__all__ = [
    "MediaTransformEngine",
    "FFmpegRunner",
    "FilterGraph",
    "PROFILES",
    "build_export_args",
    "build_filter_graph",
    "build_srt",
    "estimate_export_seconds",
    "format_srt_timestamp",
    "get_profile",
    "resolve_encode_settings",
]
