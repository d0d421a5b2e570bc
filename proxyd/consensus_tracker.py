"""Storage of the agreed consensus block numbers, in memory or shared through Redis."""

from __future__ import annotations

import base64
import json
import logging
import os
import re
import secrets
import threading
import time
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Any, Protocol

import redis

logger = logging.getLogger(__name__)

_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")

_EXTEND_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("PEXPIRE", KEYS[1], ARGV[2])
else
    return 0
end
"""

_RELEASE_SCRIPT = """
if redis.call("GET", KEYS[1]) == ARGV[1] then
    return redis.call("DEL", KEYS[1])
else
    return 0
end
"""


def _decode_uint64(text: str) -> int:
    if not text:
        raise ValueError("empty hex string")
    if not (len(text) >= 2 and text[0] == "0" and text[1] in "xX"):
        raise ValueError("hex string without 0x prefix")
    digits = text[2:]
    if not digits:
        raise ValueError('hex string "0x"')
    if len(digits) > 1 and digits[0] == "0":
        raise ValueError("hex number with leading zero digits")
    if not _HEX_DIGITS.fullmatch(digits):
        raise ValueError("invalid hex string")
    if len(digits) > 16:
        raise ValueError("hex number > 64 bits")
    return int(digits, 16)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    return str(value)


@dataclass
class ConsensusTrackerState:
    """The latest, safe and finalized block numbers agreed by the group."""

    latest: int = 0
    safe: int = 0
    finalized: int = 0

    def to_json(self) -> str:
        return json.dumps(
            {
                "latest": f"0x{self.latest:x}",
                "safe": f"0x{self.safe:x}",
                "finalized": f"0x{self.finalized:x}",
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, data: str | bytes) -> ConsensusTrackerState:
        """Decode the JSON form; block numbers are hex strings, missing ones are zero."""
        obj = json.loads(data)
        if not isinstance(obj, dict):
            raise ValueError("consensus state must be a JSON object")
        values: dict[str, int] = {}
        for key, value in obj.items():
            name = key.lower()
            if name not in ("latest", "safe", "finalized"):
                continue
            if not isinstance(value, str):
                raise ValueError(f"{key}: expected a hex string")
            values[name] = _decode_uint64(value)
        return cls(**values)


class ConsensusTracker(Protocol):
    """Where the current consensus block numbers are read and written."""

    latest_block_number: int
    safe_block_number: int
    finalized_block_number: int


class InMemoryConsensusTracker:
    """Keeps the consensus state in local memory, safe to share between threads."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = ConsensusTrackerState()

    @property
    def latest_block_number(self) -> int:
        with self._lock:
            return self._state.latest

    @latest_block_number.setter
    def latest_block_number(self, value: int) -> None:
        with self._lock:
            self._state.latest = value

    @property
    def safe_block_number(self) -> int:
        with self._lock:
            return self._state.safe

    @safe_block_number.setter
    def safe_block_number(self, value: int) -> None:
        with self._lock:
            self._state.safe = value

    @property
    def finalized_block_number(self) -> int:
        with self._lock:
            return self._state.finalized

    @finalized_block_number.setter
    def finalized_block_number(self, value: int) -> None:
        with self._lock:
            self._state.finalized = value

    def update(self, state: ConsensusTrackerState) -> None:
        """Replace all three block numbers at once."""
        with self._lock:
            self._state = replace(state)

    def snapshot(self) -> ConsensusTrackerState:
        with self._lock:
            return replace(self._state)

    def valid(self) -> bool:
        """True when every block number has been set."""
        state = self.snapshot()
        return state.latest > 0 and state.safe > 0 and state.finalized > 0

    def behind(self, other: InMemoryConsensusTracker) -> bool:
        """True when any block number is lower than the other tracker's."""
        mine = self.snapshot()
        theirs = other.snapshot()
        return (
            mine.latest < theirs.latest
            or mine.safe < theirs.safe
            or mine.finalized < theirs.finalized
        )


class RedisConsensusTracker:
    """Shares the consensus through Redis; one elected leader publishes, the others follow.

    Writes go to the local state gathered by this process; reads come from the
    shared state, which the leader refreshes with its local state.
    """

    def __init__(
        self,
        client: Any,
        namespace: str,
        lock_period: timedelta = timedelta(seconds=30),
        heartbeat_interval: timedelta = timedelta(seconds=2),
    ):
        self.client = client
        self.namespace = namespace
        self.lock_period = lock_period
        self.heartbeat_interval = heartbeat_interval
        self.leader = False
        self.leader_name = ""
        self.local = InMemoryConsensusTracker()
        self.remote = InMemoryConsensusTracker()
        self._mutex_value = ""
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def latest_block_number(self) -> int:
        return self.remote.latest_block_number

    @latest_block_number.setter
    def latest_block_number(self, value: int) -> None:
        self.local.latest_block_number = value

    @property
    def safe_block_number(self) -> int:
        return self.remote.safe_block_number

    @safe_block_number.setter
    def safe_block_number(self, value: int) -> None:
        self.local.safe_block_number = value

    @property
    def finalized_block_number(self) -> int:
        return self.remote.finalized_block_number

    @finalized_block_number.setter
    def finalized_block_number(self, value: int) -> None:
        self.local.finalized_block_number = value

    def key(self, tag: str) -> str:
        return f"consensus:{self.namespace}:{tag}"

    @property
    def _lock_ms(self) -> int:
        return max(1, self.lock_period // timedelta(milliseconds=1))

    def _acquire(self) -> bool:
        value = base64.b64encode(secrets.token_bytes(16)).decode("ascii")
        acquired = self.client.set(self.key("mutex"), value, nx=True, px=self._lock_ms)
        if not acquired:
            return False
        self._mutex_value = value
        return True

    def _extend(self) -> bool:
        try:
            result = self.client.eval(
                _EXTEND_SCRIPT, 1, self.key("mutex"), self._mutex_value, self._lock_ms
            )
        except redis.RedisError as exc:
            logger.error("failed to extend lock: %s", exc)
            return False
        return bool(result)

    def _release(self) -> bool:
        try:
            result = self.client.eval(_RELEASE_SCRIPT, 1, self.key("mutex"), self._mutex_value)
        except redis.RedisError as exc:
            logger.error("failed to release the lock: %s", exc)
            return False
        return bool(result)

    def heartbeat(self) -> None:
        """Run one round of leader election and state exchange."""
        try:
            value = _text(self.client.get(self.key("mutex")))
        except redis.RedisError as exc:
            logger.error("failed to read the lock: %s", exc)
            if self.leader:
                if not self._release():
                    logger.error("failed to release the lock after error")
                    return
                self.leader = False
            return

        if value:
            if self.leader:
                self._lead(value)
            else:
                self._follow(value)
        else:
            self._campaign()

    def _lead(self, value: str) -> None:
        logger.debug("extending lock")
        if not self._extend():
            logger.error("failed to extend lock mutex=%s val=%s", self.key("mutex"), self._mutex_value)
            if not self._release():
                logger.error("failed to release the lock after error")
                return
            self.leader = False
            return
        self._post_payload(value)

    def _follow(self, value: str) -> None:
        try:
            leader_name = _text(self.client.get(self.key(f"leader:{value}")))
        except redis.RedisError as exc:
            logger.error("failed to read the remote leader: %s", exc)
            return
        self.leader_name = leader_name
        logger.debug("following val=%s leader=%s", value, leader_name)

        try:
            payload = _text(self.client.get(self.key(f"state:{value}")))
        except redis.RedisError as exc:
            logger.error("failed to read the remote state: %s", exc)
            return
        if not payload:
            logger.error("remote state is missing (recent leader election maybe?)")
            return
        try:
            state = ConsensusTrackerState.from_json(payload)
        except ValueError as exc:
            logger.error("failed to unmarshal the remote state: %s", exc)
            return

        self.remote.update(state)
        logger.debug("updated state from remote state=%s leader=%s", payload, leader_name)

    def _campaign(self) -> None:
        if not self.local.valid():
            logger.warning("local state is not valid or behind remote, skipping")
            return
        if self.remote.valid() and self.local.behind(self.remote):
            logger.warning("local state is behind remote, skipping")
            return

        logger.info("lock not found, creating a new one")
        try:
            acquired = self._acquire()
        except redis.RedisError as exc:
            logger.debug("failed to obtain lock: %s", exc)
            acquired = False
        if not acquired:
            self.leader = False
            return

        logger.info("lock acquired mutex=%s val=%s", self.key("mutex"), self._mutex_value)
        self.leader = True
        self._post_payload(self._mutex_value)

    def _post_payload(self, mutex_value: str) -> None:
        state = self.local.snapshot()
        payload = state.to_json()
        try:
            self.client.set(self.key(f"state:{mutex_value}"), payload, px=self._lock_ms)
        except redis.RedisError as exc:
            logger.error("failed to post the state: %s", exc)
            self.leader = False
            return

        leader = os.environ.get("HOSTNAME", "")
        try:
            self.client.set(self.key(f"leader:{mutex_value}"), leader, px=self._lock_ms)
        except redis.RedisError as exc:
            logger.error("failed to post the leader: %s", exc)
            self.leader = False
            return

        logger.debug("posted state state=%s leader=%s", payload, leader)
        self.leader_name = leader
        self.remote.update(state)

    def _run(self) -> None:
        interval = self.heartbeat_interval.total_seconds()
        while True:
            deadline = time.monotonic() + interval
            try:
                self.heartbeat()
            except Exception:
                logger.exception("consensus heartbeat failed")
            if self._stop.wait(max(0.0, deadline - time.monotonic())):
                return

    def start(self) -> None:
        """Run the heartbeat in a background thread until stop() is called."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="consensus-heartbeat", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None