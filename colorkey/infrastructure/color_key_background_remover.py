from __future__ import annotations

import json
import logging
import time
from typing import Callable

from colorkey.domain.background_remover import BackgroundRemover
from colorkey.domain.color_key import ColorKeyConfig, remove_background
from colorkey.infrastructure.image_codec import decode_rgba, encode_png

logger = logging.getLogger("colorkey.remover")


class ColorKeyBackgroundRemover(BackgroundRemover):
    def __init__(self, max_side: int | None = None) -> None:
        self._max_side = max_side

    def remove(
        self,
        image_bytes: bytes,
        config: ColorKeyConfig,
        on_stage: Callable[[str], None] | None = None,
    ) -> bytes:
        start = time.perf_counter()
        pixels, width, height = decode_rgba(image_bytes, max_side=self._max_side)
        output = remove_background(pixels, width, height, config, on_stage=on_stage)
        png = encode_png(output, width, height)

        logger.info(
            json.dumps(
                {
                    "event": "background_removed",
                    "width": width,
                    "height": height,
                    "white_threshold": config.white_threshold,
                    "feather_radius": config.feather_radius,
                    "elapsed_ms": int((time.perf_counter() - start) * 1000),
                }
            )
        )
        return png
