"""Fan-in from secondary processes to the one process that owns the queue.

Secondary processes never touch the queue, the event batch or the device
id. They put typed messages on a channel (normally a
``multiprocessing.Queue``); the primary drains the channel on every tick
and applies each message itself.
"""
from __future__ import annotations

import logging
import queue
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class ForwardRequest:
    """A request built by a secondary; the primary adds app_key/device_id."""
    request: dict


@dataclass
class ForwardRaw:
    """A caller-built request that must already carry app_key and device_id."""
    request: dict


@dataclass
class ForwardBulk:
    requests: list[dict] = field(default_factory=list)


@dataclass
class ForwardEvent:
    event: dict
    device_id: str | None = None


@dataclass
class ChangeId:
    device_id: str
    merge: bool = False


class Forwarder:
    """Secondary side of the channel."""

    def __init__(self, channel) -> None:
        self.channel = channel

    def send(self, message) -> None:
        try:
            self.channel.put(message)
        except (OSError, ValueError) as e:
            # channel closed, primary gone
            logger.warning("Could not forward %s: %s", type(message).__name__, e)


class Aggregator:
    """Primary side: drains the channel into a Beacon or a BulkSender."""

    def __init__(self, target, channel, max_messages: int = 1000) -> None:
        self.target = target
        self.channel = channel
        self.max_messages = max_messages

    def pump(self) -> int:
        """Apply waiting messages without blocking. Returns how many were handled."""
        handled = 0
        while handled < self.max_messages:
            try:
                message = self.channel.get_nowait()
            except queue.Empty:
                break
            except (OSError, ValueError, EOFError) as e:
                logger.warning("Channel read failed: %s", e)
                break
            self.dispatch(message)
            handled += 1
        return handled

    def dispatch(self, message) -> None:
        if isinstance(message, ForwardRequest):
            self.target.accept_request(message.request)
        elif isinstance(message, ForwardRaw):
            self.target.accept_raw(message.request)
        elif isinstance(message, ForwardBulk):
            self.target.accept_bulk(message.requests)
        elif isinstance(message, ForwardEvent):
            self.target.accept_event(message.event, message.device_id)
        elif isinstance(message, ChangeId):
            self.target.change_id(message.device_id, message.merge)
        else:
            logger.debug("Ignoring unknown message %r", message)
