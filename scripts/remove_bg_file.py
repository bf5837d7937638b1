from __future__ import annotations

import argparse
import logging
from pathlib import Path

from colorkey.application.remove_background_use_case import (
    RemoveBackgroundOptions,
    RemoveBackgroundUseCase,
)
from colorkey.config import settings
from colorkey.infrastructure.color_key_background_remover import ColorKeyBackgroundRemover


def main() -> None:
    parser = argparse.ArgumentParser(description="Key out the white border-connected background of an image")
    parser.add_argument('input', type=Path)
    parser.add_argument('output', type=Path, nargs='?')
    parser.add_argument('--threshold', type=int, default=settings.default_white_threshold)
    parser.add_argument('--feather', type=float, default=settings.default_feather_radius)
    parser.add_argument('--background-color', default=None, help='flatten onto this #RRGGBB color')
    parser.add_argument('--max-side', type=int, default=settings.max_process_side)
    args = parser.parse_args()

    logging.basicConfig(level=settings.log_level)

    output = args.output or args.input.with_name(f"{args.input.stem}-transparent.png")
    use_case = RemoveBackgroundUseCase(ColorKeyBackgroundRemover(max_side=args.max_side))
    options = RemoveBackgroundOptions(
        white_threshold=args.threshold,
        feather_radius=args.feather,
        background_color=args.background_color,
    )
    output.write_bytes(use_case.execute(args.input.read_bytes(), options))
    print(f"written:{output}")


if __name__ == '__main__':
    main()
