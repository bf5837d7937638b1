from __future__ import annotations

import argparse
import io
import time

import requests
from PIL import Image, ImageDraw


def make_image(size: int) -> bytes:
    img = Image.new('RGB', (size, size), 'white')
    draw = ImageDraw.Draw(img)
    margin = size // 6
    draw.ellipse((margin, margin, size - margin, size - margin), fill='green')
    out = io.BytesIO()
    img.save(out, format='PNG')
    return out.getvalue()


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument('--url', default='http://127.0.0.1:8000')
    parser.add_argument('--count', type=int, default=10)
    parser.add_argument('--size', type=int, default=256)
    parser.add_argument('--sync', action='store_true', help='call /api/remove-background instead of queueing jobs')
    args = parser.parse_args()

    image = make_image(args.size)
    started = time.time()

    for _ in range(args.count):
        if args.sync:
            resp = requests.post(
                f"{args.url}/api/remove-background",
                files={'image': ('bench.png', image, 'image/png')},
                timeout=120,
            )
        else:
            resp = requests.post(
                f"{args.url}/api/jobs/remove-bg",
                files={'file': ('bench.png', image, 'image/png')},
                data={'white_threshold': '240', 'feather_radius': '2.5'},
                timeout=30,
            )
        resp.raise_for_status()

    elapsed = time.time() - started
    print({'mode': 'sync' if args.sync else 'jobs', 'submitted': args.count, 'elapsed_sec': round(elapsed, 2), 'rps': round(args.count / elapsed, 2)})


if __name__ == '__main__':
    main()
