from __future__ import annotations

import io

from PIL import Image, UnidentifiedImageError

from colorkey.domain.errors import InvalidInputError


def decode_rgba(image_bytes: bytes, max_side: int | None = None) -> tuple[bytes, int, int]:
    """Decode any Pillow-readable image into raw RGBA bytes plus its size.

    Images whose longest side exceeds ``max_side`` are downscaled first.
    """
    if not image_bytes:
        raise InvalidInputError("Image data is empty")

    try:
        with Image.open(io.BytesIO(image_bytes)) as image:
            rgba = image.convert("RGBA")
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidInputError("Invalid or corrupted image file") from exc

    if max_side and max(rgba.size) > max_side:
        rgba.thumbnail((max_side, max_side), Image.LANCZOS)

    width, height = rgba.size
    return rgba.tobytes(), width, height


def encode_png(pixels: bytes | bytearray, width: int, height: int) -> bytes:
    image = Image.frombytes("RGBA", (width, height), bytes(pixels))
    output = io.BytesIO()
    image.save(output, format="PNG")
    return output.getvalue()
