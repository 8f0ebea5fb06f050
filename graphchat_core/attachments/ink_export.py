"""手写（ink）节点导出为 PNG。

流程：裁剪到笔迹范围（含留白）→ 按倍率栅格化 → 超出尺寸/像素上限时缩小；
关闭缩小时超限直接报 RasterizationFailed。没有任何笔迹时返回 None。
"""

import base64
import io
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from PIL import Image, ImageColor, ImageDraw

from graphchat_core.domain.exceptions import RasterizationFailed
from graphchat_core.domain.models import ImageAttachment, InkNode, InkStroke

# 节点外框中非内容区域（与画布上的文本节点保持一致）
TEXT_NODE_PAD_PX = 14
TEXT_NODE_HEADER_H_PX = 44


def _clamp(raw, lo: float, hi: float, fallback: float) -> float:
    try:
        n = float(raw)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(n):
        return fallback
    return max(lo, min(hi, n))


@dataclass(frozen=True)
class InkExportOptions:
    crop_enabled: bool = True
    crop_padding_px: float = 24.0
    downscale_enabled: bool = True
    max_dim_px: int = 4096
    max_pixels: int = 6_000_000
    raster_scale: float = 2.0

    @classmethod
    def from_settings(cls, cfg) -> "InkExportOptions":
        return cls(
            crop_enabled=getattr(cfg, "ink_crop_enabled", True),
            crop_padding_px=getattr(cfg, "ink_crop_padding_px", 24.0),
            downscale_enabled=getattr(cfg, "ink_downscale_enabled", True),
            max_dim_px=getattr(cfg, "ink_max_dim_px", 4096),
            max_pixels=getattr(cfg, "ink_max_pixels", 6_000_000),
            raster_scale=getattr(cfg, "ink_raster_scale", 2.0),
        )

    def normalized(self) -> "InkExportOptions":
        return InkExportOptions(
            crop_enabled=self.crop_enabled is not False,
            crop_padding_px=_clamp(self.crop_padding_px, 0, 200, 24),
            downscale_enabled=self.downscale_enabled is not False,
            max_dim_px=round(_clamp(self.max_dim_px, 256, 8192, 4096)),
            max_pixels=round(_clamp(self.max_pixels, 100_000, 40_000_000, 6_000_000)),
            raster_scale=_clamp(self.raster_scale, 1, 4, 2),
        )


@dataclass(frozen=True)
class InkExportResult:
    base64: str
    width: int
    height: int
    mime_type: str = "image/png"

    def as_attachment(self) -> ImageAttachment:
        return ImageAttachment(mime_type=self.mime_type, data=self.base64, detail="auto")


def content_size(node: InkNode) -> Tuple[float, float]:
    w = max(1.0, float(node.width) - TEXT_NODE_PAD_PX * 2)
    h = max(1.0, float(node.height) - TEXT_NODE_HEADER_H_PX - TEXT_NODE_PAD_PX)
    return w, h


def compute_ink_bounds(strokes: List[InkStroke]) -> Optional[Tuple[float, float, float, float]]:
    """笔迹包围盒（按线宽一半外扩）。退化为点/线时返回 None。"""
    min_x = min_y = math.inf
    max_x = max_y = -math.inf
    for stroke in strokes:
        r = max(0.0, stroke.width if math.isfinite(stroke.width) else 0.0) * 0.5
        for p in stroke.points:
            if not (math.isfinite(p.x) and math.isfinite(p.y)):
                continue
            min_x = min(min_x, p.x - r)
            min_y = min(min_y, p.y - r)
            max_x = max(max_x, p.x + r)
            max_y = max(max_y, p.y + r)
    if not all(math.isfinite(v) for v in (min_x, min_y, max_x, max_y)):
        return None
    if max_x - min_x < 0.001 or max_y - min_y < 0.001:
        return None
    return min_x, min_y, max_x, max_y


def _parse_color(color: str) -> Tuple[int, int, int]:
    try:
        rgb = ImageColor.getrgb(color)
    except ValueError:
        return (255, 255, 255)
    return rgb[:3]


def _draw_stroke(draw: ImageDraw.ImageDraw, stroke: InkStroke, scale: float, ox: float, oy: float) -> None:
    pts = [((p.x - ox) * scale, (p.y - oy) * scale) for p in stroke.points if math.isfinite(p.x) and math.isfinite(p.y)]
    if not pts:
        return
    color = _parse_color(stroke.color)
    width = max(1, round((stroke.width if math.isfinite(stroke.width) else 0.0) * scale))
    r = width / 2.0
    if len(pts) == 1:
        x, y = pts[0]
        draw.ellipse((x - r, y - r, x + r, y + r), fill=color)
        return
    draw.line(pts, fill=color, width=width, joint="curve")
    # 圆形线帽
    for x, y in (pts[0], pts[-1]):
        draw.ellipse((x - r, y - r, x + r, y + r), fill=color)


def ink_node_to_png(node: InkNode, options: Optional[InkExportOptions] = None) -> Optional[InkExportResult]:
    """把手写节点栅格化为 PNG（base64）。"""

    strokes = node.strokes or []
    if not strokes:
        return None
    opts = (options or InkExportOptions()).normalized()

    world_w, world_h = content_size(node)
    crop_x, crop_y, crop_w, crop_h = 0.0, 0.0, world_w, world_h
    if opts.crop_enabled:
        bounds = compute_ink_bounds(strokes)
        if bounds:
            pad = opts.crop_padding_px
            x0 = max(0.0, min(world_w, bounds[0] - pad))
            y0 = max(0.0, min(world_h, bounds[1] - pad))
            x1 = max(0.0, min(world_w, bounds[2] + pad))
            y1 = max(0.0, min(world_h, bounds[3] + pad))
            crop_x, crop_y, crop_w, crop_h = x0, y0, max(1.0, x1 - x0), max(1.0, y1 - y0)

    scale = opts.raster_scale
    px_w = max(1, round(crop_w * scale))
    px_h = max(1, round(crop_h * scale))

    if opts.downscale_enabled:
        scale_by_dim = min(1.0, opts.max_dim_px / px_w, opts.max_dim_px / px_h)
        if scale_by_dim < 1:
            scale *= scale_by_dim
            px_w = max(1, round(crop_w * scale))
            px_h = max(1, round(crop_h * scale))
        pixels = px_w * px_h
        if pixels > opts.max_pixels:
            scale *= math.sqrt(opts.max_pixels / pixels)
            px_w = max(1, round(crop_w * scale))
            px_h = max(1, round(crop_h * scale))
    else:
        pixels = px_w * px_h
        if px_w > opts.max_dim_px or px_h > opts.max_dim_px or pixels > opts.max_pixels:
            raise RasterizationFailed(
                code="INK_TOO_LARGE",
                message=(
                    f"Ink image is {px_w}x{px_h} ({pixels:,} px), which exceeds the current limits "
                    f"({opts.max_dim_px} max dim, {opts.max_pixels:,} max pixels). "
                    "Enable scaling or adjust limits."
                ),
                node_id=node.id,
            )

    image = Image.new("RGB", (px_w, px_h), (0, 0, 0))
    draw = ImageDraw.Draw(image)
    for stroke in strokes:
        _draw_stroke(draw, stroke, scale, crop_x, crop_y)

    buf = io.BytesIO()
    image.save(buf, format="PNG")
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return InkExportResult(base64=encoded, width=px_w, height=px_h)
