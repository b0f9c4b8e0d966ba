"""
Image frames for the LED matrix

Both publishers send raw frames: packed 8-bit RGB, row major, no header.

- Local images: a random file from disk, resized to the matrix, on a
  randomized delay.
- Remote images: an HTTP image (radar loops, webcams) resized and then
  cropped to the matrix window, at fixed minute offsets per source.
"""

from __future__ import annotations

import functools
import io
import logging
import random
from pathlib import Path

import httpx
from PIL import Image

from .broker_mux import BrokerMux, wait_result
from .config import LocalImageConfig, RemoteImageConfig, RemoteImageSource
from .jobs import OffsetJobRunner, RandomJobRunner

LOGGER = logging.getLogger("conduit.images")

REMOTE_TIMEOUT_SECONDS = 15.0


def image_to_matrix_bytes(image: Image.Image) -> bytes:
    return image.convert("RGB").tobytes()


def load_local_frame(path: Path | str, width: int, height: int) -> bytes | None:
    try:
        with Image.open(path) as original:
            final = original.resize((width, height), Image.Resampling.LANCZOS)
    except OSError as exc:
        LOGGER.error("[images] %s: open: %s", path, exc)
        return None
    return image_to_matrix_bytes(final)


class LocalImagePublisher:
    def __init__(self, mux: BrokerMux, config: LocalImageConfig, rng: random.Random | None = None) -> None:
        self.mux = mux
        self.config = config
        self._rng = rng or random.Random()

    def publish_random(self) -> str | None:
        path = self._rng.choice(self.config.sources)
        frame = load_local_frame(path, self.config.width, self.config.height)
        if frame is None:
            return None
        LOGGER.info("[images] posting %s to %s", path, self.config.topic)
        wait_result(self.mux.publish(self.config.topic, frame), logger=LOGGER)
        return path


def start_local_images(mux: BrokerMux, config: LocalImageConfig) -> RandomJobRunner | None:
    if not config.topic or not config.sources:
        return None
    publisher = LocalImagePublisher(mux, config)
    runner = RandomJobRunner("local-images", config.fixed_delay, config.rand_delay, publisher.publish_random)
    runner.run()
    return runner


def build_remote_frame(content: bytes, source: RemoteImageSource, width: int, height: int) -> bytes:
    """Resize, then crop a ``width`` x ``height`` window at the source's start point."""
    with Image.open(io.BytesIO(content)) as original:
        size = (source.resize_width or original.width, source.resize_height or original.height)
        scaled = original.resize(size, Image.Resampling.LANCZOS)
    box = (source.start_x, source.start_y, source.start_x + width, source.start_y + height)
    if box[2] > scaled.width or box[3] > scaled.height:
        LOGGER.error("[remote-image] crop %s outside %sx%s: %s", box, scaled.width, scaled.height, source.uri)
    return image_to_matrix_bytes(scaled.crop(box))


def publish_remote_image(mux: BrokerMux, config: RemoteImageConfig, source: RemoteImageSource) -> bool:
    try:
        response = httpx.get(source.uri, timeout=REMOTE_TIMEOUT_SECONDS, follow_redirects=True)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        LOGGER.error("[remote-image] GET bad response: %s: %s", source.uri, exc.response.status_code)
        return False
    except httpx.HTTPError as exc:
        LOGGER.error("[remote-image] GET error: %s: %s", source.uri, exc)
        return False

    try:
        frame = build_remote_frame(response.content, source, config.width, config.height)
    except OSError as exc:
        LOGGER.error("[remote-image] bad decode: %s: %s", source.uri, exc)
        return False

    LOGGER.info("[remote-image] posting to %s", config.topic)
    return wait_result(mux.publish(config.topic, frame), logger=LOGGER)


def start_remote_images(mux: BrokerMux, config: RemoteImageConfig) -> OffsetJobRunner | None:
    if not config.topic or not config.sources:
        return None
    runner = OffsetJobRunner("remote-images")
    for source in config.sources:
        job = functools.partial(publish_remote_image, mux, config, source)
        for offset in source.offsets:
            runner.add_job(offset, job)
    runner.run()
    return runner
