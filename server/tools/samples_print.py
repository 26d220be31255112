from __future__ import annotations

import argparse
import asyncio

import websockets

from audiorelay.colors import audio_brightness, audio_to_rgb, rgb_to_hex
from audiorelay.protocol import SampleDecodeError, decode_sample


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Print audio samples relayed to dashboard clients")
    parser.add_argument("--url", default="ws://127.0.0.1:8766")
    parser.add_argument("--rgb", action="store_true", help="Also print the light colour and brightness for each sample")
    return parser


async def main() -> None:
    args = build_parser().parse_args()
    async with websockets.connect(args.url) as ws:
        async for msg in ws:
            if not args.rgb:
                print(msg)
                continue
            try:
                sample = decode_sample(msg)
            except SampleDecodeError as e:
                print(f"{msg}  <undecodable: {e}>")
                continue
            beat = " BEAT" if sample.beat else ""
            print(f"{msg}  color={rgb_to_hex(audio_to_rgb(sample))} bri={audio_brightness(sample)}{beat}")


if __name__ == "__main__":
    asyncio.run(main())
