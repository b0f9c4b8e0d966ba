"""Republish any subscribed topic onto another topic, across brokers if needed.

Wildcards work on the subscribe side only; the publish side is one topic.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .broker_mux import BrokerMux, NamespacedMessage, dispatch, wait_result
from .config import MirrorConfig

LOGGER = logging.getLogger("conduit.mirror")


def start_mirrors(mux: BrokerMux, mirrors: Iterable[MirrorConfig]) -> list[MirrorConfig]:
    started: list[MirrorConfig] = []
    for mirror in mirrors:
        LOGGER.info("[mirror] %s -> %s", mirror.sub, mirror.pub)

        def _forward(message: NamespacedMessage, mirror: MirrorConfig = mirror) -> None:
            LOGGER.debug("[mirror] processing %s", message.topic)
            dispatch(mux, mirror.pub, message.payload, logger=LOGGER)

        if wait_result(mux.subscribe(mirror.sub, _forward), logger=LOGGER):
            started.append(mirror)
    return started
