from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable

from colorkey.domain.color_key import ColorKeyConfig


class BackgroundRemover(ABC):
    @abstractmethod
    def remove(
        self,
        image_bytes: bytes,
        config: ColorKeyConfig,
        on_stage: Callable[[str], None] | None = None,
    ) -> bytes:
        """Return processed PNG bytes with background removed."""
