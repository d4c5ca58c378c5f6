"""Filter graph construction from declarative visual effects.

Effects are chained in the order they appear on the recording, not sorted
by time. Each applied effect consumes the previous stage's labelled stream
(``[0:v]`` for the first) and produces ``[v<i>]``; overlapping windows
therefore stack by array position.

Effects without coordinates and ``annotation`` effects are skipped.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable

from src.schemas.export import Watermark
from src.schemas.recording import VisualEffect

logger = logging.getLogger(__name__)

DEFAULT_ZOOM_SCALE = 1.5
BLUR_STRENGTH = "10:1"
HIGHLIGHT_COLOR = "yellow@0.3"
HIGHLIGHT_THICKNESS = 3
WATERMARK_MARGIN = 10
WATERMARK_FONT_SIZE = 24


def _num(value: float) -> str:
    """Format a number for ffmpeg without a trailing ``.0``."""
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.3f}".rstrip("0").rstrip(".")


def enable_expr(start_s: float, end_s: float) -> str:
    return f"enable='between(t,{_num(start_s)},{_num(end_s)})'"


@dataclass
class FilterGraph:
    """Chained filter graph with a single labelled video output."""

    input_label: str = "0:v"
    stages: list[str] = field(default_factory=list)
    output_label: str | None = None
    applied: int = 0

    @property
    def current_label(self) -> str:
        return self.output_label or self.input_label

    def append_chain(self, filters: list[str], label: str) -> None:
        """Append a linear filter chain consuming the current output."""
        self.stages.append(f"[{self.current_label}]{','.join(filters)}[{label}]")
        self.output_label = label

    def render(self) -> str:
        return ";".join(self.stages)


def _blur_stage(index: int, source: str, effect: VisualEffect) -> list[str]:
    c = effect.coordinates
    base, region, fx = f"b{index}base", f"b{index}src", f"b{index}fx"
    return [
        f"[{source}]split[{base}][{region}]",
        f"[{region}]crop={_num(c.width)}:{_num(c.height)}:{_num(c.x)}:{_num(c.y)},boxblur={BLUR_STRENGTH}[{fx}]",
        f"[{base}][{fx}]overlay={_num(c.x)}:{_num(c.y)}:"
        f"{enable_expr(effect.start_time, effect.end_time)}[v{index}]",
    ]


def _zoom_scale(effect: VisualEffect) -> float | None:
    raw = effect.properties.get("scale", DEFAULT_ZOOM_SCALE)
    try:
        scale = float(raw)
    except (TypeError, ValueError):
        return None
    return scale if scale > 0 else None


def _zoom_stage(index: int, source: str, effect: VisualEffect, scale: float) -> list[str]:
    c = effect.coordinates
    zoom_w = round(c.width * scale)
    zoom_h = round(c.height * scale)
    # Keep the zoomed region centred on the original rectangle's centre
    x = c.x - (zoom_w - c.width) / 2
    y = c.y - (zoom_h - c.height) / 2
    base, region, fx = f"z{index}base", f"z{index}src", f"z{index}fx"
    return [
        f"[{source}]split[{base}][{region}]",
        f"[{region}]crop={_num(c.width)}:{_num(c.height)}:{_num(c.x)}:{_num(c.y)},scale={zoom_w}:{zoom_h}[{fx}]",
        f"[{base}][{fx}]overlay={_num(x)}:{_num(y)}:"
        f"{enable_expr(effect.start_time, effect.end_time)}[v{index}]",
    ]


def _highlight_stage(index: int, source: str, effect: VisualEffect) -> list[str]:
    c = effect.coordinates
    return [
        f"[{source}]drawbox=x={_num(c.x)}:y={_num(c.y)}:w={_num(c.width)}:h={_num(c.height)}:"
        f"color={HIGHLIGHT_COLOR}:t={HIGHLIGHT_THICKNESS}:"
        f"{enable_expr(effect.start_time, effect.end_time)}[v{index}]"
    ]


def build_filter_graph(effects: Iterable[VisualEffect], input_label: str = "0:v") -> FilterGraph | None:
    """Build the effect graph, or None when no effect applies."""
    graph = FilterGraph(input_label=input_label)

    for position, effect in enumerate(effects):
        if effect.type == "annotation":
            logger.info(f"Skipping annotation effect at position {position}: not rendered")
            continue
        if effect.coordinates is None:
            logger.info(f"Skipping {effect.type} effect at position {position}: missing coordinates")
            continue

        index = graph.applied
        source = graph.current_label
        if effect.type == "blur":
            stages = _blur_stage(index, source, effect)
        elif effect.type == "zoom":
            scale = _zoom_scale(effect)
            if scale is None:
                logger.warning(f"Skipping zoom effect at position {position}: invalid scale")
                continue
            stages = _zoom_stage(index, source, effect, scale)
        else:
            stages = _highlight_stage(index, source, effect)

        graph.stages.extend(stages)
        graph.output_label = f"v{index}"
        graph.applied += 1

    if graph.applied == 0:
        return None
    return graph


def escape_drawtext(text: str) -> str:
    """Escape text for use inside a quoted drawtext ``text`` option."""
    return (
        text.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace(":", "\\:")
        .replace("%", "\\%")
    )


def watermark_filter(watermark: Watermark) -> str | None:
    """drawtext filter for the watermark, or None when disabled/empty."""
    if not watermark.enabled or not watermark.text:
        return None
    m = WATERMARK_MARGIN
    positions = {
        "top-left": (f"{m}", f"{m}"),
        "top-right": (f"w-tw-{m}", f"{m}"),
        "bottom-left": (f"{m}", f"h-th-{m}"),
        "bottom-right": (f"w-tw-{m}", f"h-th-{m}"),
    }
    x, y = positions[watermark.position]
    return (
        f"drawtext=text='{escape_drawtext(watermark.text)}':fontsize={WATERMARK_FONT_SIZE}:"
        f"fontcolor=white:alpha={_num(watermark.opacity)}:x={x}:y={y}"
    )
