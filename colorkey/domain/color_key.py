"""Color-keyed background removal on raw RGBA buffers.

The background is the near-white region connected to the image border. It is
found with an explicit-stack flood fill, every background pixel then gets its
8-connected step distance to the nearest kept pixel, and that distance drives a
smoothstep alpha ramp so the cutout edge is feathered instead of jagged.

Buffers are flat, row-major, four bytes per pixel; pixel ``i`` lives at
``i * 4`` and pixel ``(x, y)`` is ``i = y * width + x``.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Callable, Sequence

from colorkey.domain.errors import ConfigurationError, InvalidInputError

CHANNELS = 4
DIAGONAL_STEP = math.sqrt(2.0)

STAGE_FLOOD_FILL = "flood_fill"
STAGE_DISTANCE = "distance"
STAGE_ALPHA = "alpha"


@dataclass(frozen=True)
class ColorKeyConfig:
    white_threshold: int = 240
    feather_radius: float = 2.5

    def __post_init__(self) -> None:
        threshold = self.white_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, int):
            raise ConfigurationError("white_threshold must be an integer")
        if threshold < 0 or threshold > 255:
            raise ConfigurationError("white_threshold must be between 0 and 255")

        radius = self.feather_radius
        if isinstance(radius, bool) or not isinstance(radius, (int, float)):
            raise ConfigurationError("feather_radius must be a number")
        if not math.isfinite(radius) or radius <= 0:
            raise ConfigurationError("feather_radius must be greater than 0")


def validate_grid(pixels: Sequence[int] | bytes | bytearray, width: int, height: int) -> bytearray:
    """Check dimensions and buffer length, and return a private copy of the buffer."""
    for name, value in (("width", width), ("height", height)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidInputError(f"{name} must be an integer")
        if value <= 0:
            raise InvalidInputError(f"{name} must be greater than 0")

    if isinstance(pixels, (int, str)):
        raise InvalidInputError("Pixel buffer must be a sequence of channel values")
    try:
        buffer = bytearray(pixels)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError("Pixel channels must be integers between 0 and 255") from exc

    expected = width * height * CHANNELS
    if len(buffer) != expected:
        raise InvalidInputError(
            f"Pixel buffer has {len(buffer)} bytes, expected {expected} for {width}x{height} RGBA"
        )
    return buffer


def is_background_color(pixels: Sequence[int], index: int, white_threshold: int) -> bool:
    offset = index * CHANNELS
    return (
        pixels[offset] > white_threshold
        and pixels[offset + 1] > white_threshold
        and pixels[offset + 2] > white_threshold
    )


def whiteness(pixels: Sequence[int], index: int, white_threshold: int) -> float:
    """How far the darkest channel sits above the threshold, normalised to [0, 1]."""
    offset = index * CHANNELS
    darkest = min(pixels[offset], pixels[offset + 1], pixels[offset + 2])
    if darkest < white_threshold or white_threshold >= 255:
        return 0.0
    return (darkest - white_threshold) / (255 - white_threshold)


def _border_indices(width: int, height: int) -> list[int]:
    last_row = (height - 1) * width
    seeds: list[int] = []
    for x in range(width):
        seeds.append(x)
        seeds.append(last_row + x)
    for y in range(height):
        seeds.append(y * width)
        seeds.append(y * width + width - 1)
    return seeds


def build_background_mask(
    pixels: Sequence[int], width: int, height: int, white_threshold: int
) -> bytearray:
    """Flag every background-colored pixel 4-connected to the image border."""
    size = width * height
    mask = bytearray(size)
    stack = _border_indices(width, height)

    while stack:
        index = stack.pop()
        if mask[index] or not is_background_color(pixels, index, white_threshold):
            continue
        mask[index] = 1

        x = index % width
        if x > 0:
            stack.append(index - 1)
        if x < width - 1:
            stack.append(index + 1)
        if index >= width:
            stack.append(index - width)
        if index + width < size:
            stack.append(index + width)

    return mask


_NEIGHBOUR_STEPS = (
    (-1, 0, 1.0),
    (1, 0, 1.0),
    (0, -1, 1.0),
    (0, 1, 1.0),
    (-1, -1, DIAGONAL_STEP),
    (1, -1, DIAGONAL_STEP),
    (-1, 1, DIAGONAL_STEP),
    (1, 1, DIAGONAL_STEP),
)


def compute_distance_field(mask: Sequence[int], width: int, height: int) -> list[float]:
    """Step distance from every pixel to the nearest unmasked pixel.

    Orthogonal steps cost 1 and diagonal steps cost sqrt(2). Relaxation runs on
    a FIFO queue and a pixel is queued again every time its distance improves,
    so diagonal shortcuts found late still propagate. Masked pixels with no
    unmasked pixel anywhere in the grid keep ``math.inf``.
    """
    distance = [math.inf if flag else 0.0 for flag in mask]
    queue = deque(index for index, flag in enumerate(mask) if not flag)

    while queue:
        index = queue.popleft()
        y, x = divmod(index, width)
        current = distance[index]
        for dx, dy, step in _NEIGHBOUR_STEPS:
            nx = x + dx
            ny = y + dy
            if nx < 0 or nx >= width or ny < 0 or ny >= height:
                continue
            neighbour = ny * width + nx
            candidate = current + step
            if candidate < distance[neighbour]:
                distance[neighbour] = candidate
                queue.append(neighbour)

    return distance


def feathered_alpha(distance: float, alpha: int, feather_radius: float) -> int:
    """Smoothstep falloff from ``alpha`` at distance 0 to 0 at ``feather_radius``."""
    if distance > feather_radius:
        return 0
    t = distance / feather_radius
    smooth = t * t * (3 - 2 * t)
    value = math.floor((1 - smooth) * alpha + 0.5)
    return max(0, min(255, value))


def apply_feathered_alpha(
    pixels: bytearray, mask: Sequence[int], distance: Sequence[float], feather_radius: float
) -> None:
    for index, flag in enumerate(mask):
        if not flag:
            continue
        offset = index * CHANNELS + 3
        pixels[offset] = feathered_alpha(distance[index], pixels[offset], feather_radius)


def remove_background(
    pixels: Sequence[int] | bytes | bytearray,
    width: int,
    height: int,
    config: ColorKeyConfig | None = None,
    on_stage: Callable[[str], None] | None = None,
) -> bytearray:
    """Return a copy of ``pixels`` with the border-connected white background keyed out.

    ``on_stage`` is called with the stage name before each of the three
    passes; raising from it aborts the removal.
    """
    cfg = config or ColorKeyConfig()
    output = validate_grid(pixels, width, height)

    if on_stage:
        on_stage(STAGE_FLOOD_FILL)
    mask = build_background_mask(output, width, height, cfg.white_threshold)

    if on_stage:
        on_stage(STAGE_DISTANCE)
    distance = compute_distance_field(mask, width, height)

    if on_stage:
        on_stage(STAGE_ALPHA)
    apply_feathered_alpha(output, mask, distance, cfg.feather_radius)
    return output
