"""
Aspect ratio presets offered to the client and their resolution into the
"W:H" string the generation workflow expects.
"""
# stdlib imports
from dataclasses import dataclass
from math import gcd


@dataclass(frozen=True, slots=True)
class AspectRatioPreset:
    id: str
    label: str
    aspect_ratio: str


ASPECT_RATIO_PRESETS: tuple[AspectRatioPreset, ...] = (
    AspectRatioPreset("3_4", "3:4 (Portrait)", "3:4"),
    AspectRatioPreset("4_3", "4:3 (Landscape)", "4:3"),
    AspectRatioPreset("4_5", "4:5 (Portrait)", "4:5"),
    AspectRatioPreset("5_4", "5:4 (Landscape)", "5:4"),
    AspectRatioPreset("yt_thumbnail", "YouTube Thumbnail (16:9)", "16:9"),
    AspectRatioPreset("ig_post_square", "Instagram Post Square (1:1)", "1:1"),
    AspectRatioPreset("ig_post_portrait", "Instagram Post Portrait (4:5)", "4:5"),
    AspectRatioPreset("ig_story", "TikTok / Instagram Reels (9:16)", "9:16"),
)

DEFAULT_ASPECT_RATIO_ID = "4_3"
CUSTOM_ASPECT_RATIO_ID = "custom"


def simplify_aspect_ratio(width: int, height: int) -> str:
    """Reduce width:height by their greatest common divisor (1920x1080 -> "16:9")."""
    if width <= 0 or height <= 0:
        raise ValueError("Width and height must be positive.")

    divisor = gcd(width, height)
    return f"{width // divisor}:{height // divisor}"


def resolve_aspect_ratio_string(
    aspect_ratio_id: str,
    custom_dimensions: tuple[int, int] | None = None,
) -> str:
    """
    Map a preset id (or "custom" plus dimensions) to its ratio string.

    Raises:
        ValueError: Unknown preset, or "custom" without dimensions.
    """
    if aspect_ratio_id == CUSTOM_ASPECT_RATIO_ID:
        if not custom_dimensions:
            raise ValueError("Custom dimensions are required for custom aspect ratios.")
        return simplify_aspect_ratio(*custom_dimensions)

    for preset in ASPECT_RATIO_PRESETS:
        if preset.id == aspect_ratio_id:
            return preset.aspect_ratio

    raise ValueError(f"Unknown aspect ratio preset: {aspect_ratio_id}")
