from __future__ import annotations

import argparse
import asyncio
import logging
import math
import time
import wave

import numpy as np
import websockets
from websockets.asyncio.server import ServerConnection

from audiorelay.audio_features import BeatDetector, pcm16le_bytes_to_float32, sample_from_pcm
from audiorelay.logging_utils import setup_logging
from audiorelay.protocol import encode_sample


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Simulate the audio-analysis producer the relay connects to")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--wav", help="Path to mono 16-bit PCM WAV file (looped)")
    parser.add_argument("--tone-hz", type=float, help="Generate a sine wave instead of reading WAV")
    parser.add_argument("--amplitude", type=float, default=0.5, help="Tone amplitude (0..1)")
    parser.add_argument("--pulse-hz", type=float, default=2.0, help="Tone amplitude pulses per second (0 = steady)")
    parser.add_argument("--frame-ms", type=int, default=50)
    parser.add_argument("--sample-rate", type=int, default=44100, help="Tone sample rate (WAV uses its own)")
    parser.add_argument("--garbage-every", type=int, default=0, help="Send a malformed frame every N frames")
    parser.add_argument("--log-level", default="INFO")
    return parser


def _read_wav_frames(wav_path: str, frame_ms: int) -> tuple[int, list[bytes]]:
    with wave.open(wav_path, "rb") as wf:
        if wf.getnchannels() != 1:
            raise SystemExit("WAV must be mono")
        if wf.getsampwidth() != 2:
            raise SystemExit("WAV must be 16-bit PCM")
        sample_rate = wf.getframerate()
        frames_per_chunk = int(sample_rate * (frame_ms / 1000.0))
        chunks: list[bytes] = []
        while True:
            chunk = wf.readframes(frames_per_chunk)
            if len(chunk) < frames_per_chunk * 2:
                break
            chunks.append(chunk)
    if not chunks:
        raise SystemExit("WAV is shorter than one frame")
    return sample_rate, chunks


def _tone_frame(index: int, sample_rate: int, frame_ms: int, tone_hz: float, amplitude: float, pulse_hz: float) -> np.ndarray:
    n = int(sample_rate * (frame_ms / 1000.0))
    t = (np.arange(n, dtype=np.float64) + index * n) / sample_rate
    amp = max(0.0, min(1.0, amplitude))
    if pulse_hz > 0:
        # Sharp attack, exponential decay: reads as a kick to the beat detector.
        phase = (t * pulse_hz) % 1.0
        amp = amp * np.exp(-6.0 * phase)
    return (np.sin(2.0 * math.pi * tone_hz * t) * amp).astype(np.float32)


async def main() -> None:
    args = build_parser().parse_args()
    if not args.wav and not args.tone_hz:
        raise SystemExit("Provide --wav or --tone-hz")
    if args.wav and args.tone_hz:
        raise SystemExit("Provide only one of --wav or --tone-hz")
    setup_logging(args.log_level)
    log = logging.getLogger("feed_sim")

    wav_chunks: list[bytes] = []
    sample_rate = int(args.sample_rate)
    if args.wav:
        sample_rate, wav_chunks = _read_wav_frames(args.wav, args.frame_ms)

    clients: set[ServerConnection] = set()

    async def handler(conn: ServerConnection) -> None:
        clients.add(conn)
        log.info("Relay connected from %s", conn.remote_address)
        try:
            await conn.wait_closed()
        finally:
            clients.discard(conn)
            log.info("Relay disconnected from %s", conn.remote_address)

    async def send_all(payload: str) -> None:
        dead: list[ServerConnection] = []
        for c in list(clients):
            try:
                await c.send(payload)
            except Exception:
                dead.append(c)
        for c in dead:
            clients.discard(c)

    detector = BeatDetector()
    frame_s = args.frame_ms / 1000.0
    async with websockets.serve(handler, args.host, args.port):
        log.info("Producer listening on ws://%s:%d (frame_ms=%d sample_rate=%d)", args.host, args.port, args.frame_ms, sample_rate)
        index = 0
        next_time = time.monotonic()
        while True:
            if wav_chunks:
                samples = pcm16le_bytes_to_float32(wav_chunks[index % len(wav_chunks)])
            else:
                samples = _tone_frame(index, sample_rate, args.frame_ms, args.tone_hz, args.amplitude, args.pulse_hz)
            sample = sample_from_pcm(
                samples,
                sample_rate,
                detector,
                now_s=index * frame_s,
                timestamp_ms=int(time.time() * 1000),
            )
            index += 1
            if args.garbage_every > 0 and index % args.garbage_every == 0:
                await send_all('{"bass":')
            else:
                await send_all(encode_sample(sample))
            next_time += frame_s
            sleep = next_time - time.monotonic()
            if sleep > 0:
                await asyncio.sleep(sleep)


if __name__ == "__main__":
    asyncio.run(main())
