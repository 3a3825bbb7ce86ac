from .roi import (
    MIN_ROI_POINTS,
    apply_roi_mask,
    denormalize_polygon,
    draw_roi_outline,
    is_valid_roi,
    normalize_polygon,
    parse_roi,
    roi_to_payload,
)

__all__ = [
    "MIN_ROI_POINTS",
    "apply_roi_mask",
    "denormalize_polygon",
    "draw_roi_outline",
    "is_valid_roi",
    "normalize_polygon",
    "parse_roi",
    "roi_to_payload",
]
