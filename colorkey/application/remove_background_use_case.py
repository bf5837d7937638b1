from __future__ import annotations

import io
import re
from dataclasses import dataclass
from typing import Callable

from PIL import Image

from colorkey.domain.background_remover import BackgroundRemover
from colorkey.domain.color_key import ColorKeyConfig
from colorkey.domain.errors import ConfigurationError, InvalidInputError

_HEX_COLOR = re.compile(r"[0-9a-fA-F]{6}")


def parse_hex_color(value: str) -> tuple[int, int, int]:
    raw = value.strip()
    if raw.startswith("#"):
        raw = raw[1:]
    if not _HEX_COLOR.fullmatch(raw):
        raise ConfigurationError("background_color must be a 6-digit hex color like #FFFFFF")
    return int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16)


@dataclass
class RemoveBackgroundOptions:
    white_threshold: int = 240
    feather_radius: float = 2.5
    background_color: str | None = None

    def to_config(self) -> ColorKeyConfig:
        return ColorKeyConfig(white_threshold=self.white_threshold, feather_radius=self.feather_radius)

    def fill_rgb(self) -> tuple[int, int, int] | None:
        if not self.background_color:
            return None
        return parse_hex_color(self.background_color)


class RemoveBackgroundUseCase:
    def __init__(self, remover: BackgroundRemover) -> None:
        self._remover = remover

    def execute(
        self,
        image_bytes: bytes,
        options: RemoveBackgroundOptions | None = None,
        on_stage: Callable[[str], None] | None = None,
    ) -> bytes:
        if not image_bytes:
            raise InvalidInputError("Uploaded file is empty")

        opts = options or RemoveBackgroundOptions()
        config = opts.to_config()
        fill = opts.fill_rgb()

        output_png = self._remover.remove(image_bytes, config, on_stage=on_stage)
        if fill is None:
            return output_png
        return self._fill_background(output_png, fill)

    def _fill_background(self, png_bytes: bytes, fill: tuple[int, int, int]) -> bytes:
        with Image.open(io.BytesIO(png_bytes)) as image:
            rgba = image.convert("RGBA")
            canvas = Image.new("RGBA", rgba.size, (*fill, 255))
            flattened = Image.alpha_composite(canvas, rgba)

            output = io.BytesIO()
            flattened.save(output, format="PNG")
            return output.getvalue()
