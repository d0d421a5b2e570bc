"""Polls the members of a backend group and resolves the block they agree on."""

from __future__ import annotations

import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Any, Callable, Iterable

from .consensus_tracker import ConsensusTracker, InMemoryConsensusTracker
from .sliding_window import AvgSlidingWindow

logger = logging.getLogger(__name__)

DEFAULT_POLLER_INTERVAL = timedelta(seconds=1)

_UINT64_MOD = 1 << 64
_HEX_DIGITS = re.compile(r"[0-9a-fA-F]+")
_TRUE_STRINGS = {"1", "t", "T", "TRUE", "true", "True"}
_FALSE_STRINGS = {"0", "f", "F", "FALSE", "false", "False"}

OnConsensusBroken = Callable[[], None]


def _decode_uint64(text: Any) -> int:
    if not isinstance(text, str):
        raise ValueError("expected a hex string")
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


def _parse_bool(text: str) -> bool:
    if text in _TRUE_STRINGS:
        return True
    if text in _FALSE_STRINGS:
        return False
    raise ValueError(f'invalid syntax parsing "{text}" as a boolean')


class ConsensusBackend(ABC):
    """A backend as seen by the consensus poller."""

    def __init__(
        self,
        name: str,
        *,
        forced_candidate: bool = False,
        skip_peer_count_check: bool = False,
        intermittent_errors: AvgSlidingWindow | None = None,
    ):
        self.name = name
        self.forced_candidate = forced_candidate
        self.skip_peer_count_check = skip_peer_count_check
        self.intermittent_errors = (
            intermittent_errors if intermittent_errors is not None else AvgSlidingWindow()
        )

    @abstractmethod
    def is_healthy(self) -> bool:
        """Whether latency and error rate are within bounds."""

    @abstractmethod
    def forward_rpc(self, method: str, *params: Any) -> Any:
        """Call method on the backend and return the result; raise on failure."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


@dataclass(eq=False)
class ConsensusBackendGroup:
    """A named set of backends, some of which may be fallbacks."""

    name: str
    backends: list[ConsensusBackend] = field(default_factory=list)
    fallback_backends: dict[str, bool] = field(default_factory=dict)

    def primaries(self) -> list[ConsensusBackend]:
        return [be for be in self.backends if not self.fallback_backends.get(be.name, False)]

    def fallbacks(self) -> list[ConsensusBackend]:
        return [be for be in self.backends if self.fallback_backends.get(be.name, False)]


@dataclass
class BackendState:
    """What was last observed of one backend; timestamps are seconds, 0 meaning never."""

    latest_block_number: int = 0
    latest_block_hash: str = ""
    safe_block_number: int = 0
    finalized_block_number: int = 0
    peer_count: int = 0
    in_sync: bool = False
    last_update: float = 0.0
    banned_until: float = 0.0
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def is_banned(self) -> bool:
        return self.clock() < self.banned_until


class NoopAsyncHandler:
    """Runs nothing in the background; consensus is updated only when asked."""

    def __init__(self) -> None:
        logger.warning("using NoopAsyncHandler")
        self.running = False

    def start(self) -> None:
        """Mark the handler as started; no background work is scheduled."""
        self.running = True

    def shutdown(self) -> None:
        """Mark the handler as stopped."""
        self.running = False


class PollerAsyncHandler:
    """Updates every backend and the group consensus from background threads."""

    def __init__(self, poller: ConsensusPoller):
        self.poller = poller
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _loop(self, step: Callable[[], None], name: str) -> None:
        interval = self.poller.interval.total_seconds()
        while True:
            deadline = time.monotonic() + interval
            try:
                step()
            except Exception:
                logger.exception("consensus poller step %s failed", name)
            if self._stop.wait(max(0.0, deadline - time.monotonic())):
                return

    def _spawn(self, step: Callable[[], None], name: str) -> None:
        thread = threading.Thread(target=self._loop, args=(step, name), name=name, daemon=True)
        self._threads.append(thread)
        thread.start()

    def _fallback_step(self, backend: ConsensusBackend) -> None:
        group = self.poller.backend_group
        healthy = self.poller.filter_candidates(group.primaries())
        logger.info("number of healthy primary candidates: %d", len(healthy))
        if not healthy:
            logger.debug("zero healthy candidates, querying fallback backend %s", backend.name)
            self.poller.update_backend(backend)

    def start(self) -> None:
        group = self.poller.backend_group
        logger.info("total number of primary candidates: %d", len(group.primaries()))
        logger.info("total number of fallback candidates: %d", len(group.fallbacks()))
        self._stop.clear()
        for be in group.primaries():
            self._spawn(lambda be=be: self.poller.update_backend(be), f"poll-{be.name}")
        for be in group.fallbacks():
            self._spawn(lambda be=be: self._fallback_step(be), f"poll-fallback-{be.name}")
        self._spawn(self.poller.update_backend_group_consensus, f"consensus-{group.name}")

    def shutdown(self) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=5)
        self._threads = []


class ConsensusPoller:
    """Tracks each backend's chain head and the highest block the group agrees on."""

    def __init__(
        self,
        backend_group: ConsensusBackendGroup,
        *,
        tracker: ConsensusTracker | None = None,
        async_handler: Any = None,
        listeners: Iterable[OnConsensusBroken] = (),
        ban_period: timedelta = timedelta(minutes=5),
        max_update_threshold: timedelta = timedelta(seconds=30),
        max_block_lag: int = 8,
        max_block_range: int = 0,
        min_peer_count: int = 3,
        interval: timedelta = DEFAULT_POLLER_INTERVAL,
        clock: Callable[[], float] = time.time,
    ):
        self.backend_group = backend_group
        self.tracker = tracker if tracker is not None else InMemoryConsensusTracker()
        self.listeners: list[OnConsensusBroken] = list(listeners)
        self.ban_period = ban_period
        self.max_update_threshold = max_update_threshold
        self.max_block_lag = max_block_lag
        self.max_block_range = max_block_range
        self.min_peer_count = min_peer_count
        self.interval = interval
        self._clock = clock
        self._states: dict[ConsensusBackend, BackendState] = {}
        self._group_lock = threading.Lock()
        self._group: list[ConsensusBackend] = []
        self.async_handler = async_handler if async_handler is not None else PollerAsyncHandler(self)
        self.reset()
        self.async_handler.start()

    # --- consensus view ------------------------------------------------------

    def consensus_group(self) -> list[ConsensusBackend]:
        """The backends currently agreeing on the consensus."""
        with self._group_lock:
            return list(self._group)

    def latest_block_number(self) -> int:
        return self.tracker.latest_block_number

    def safe_block_number(self) -> int:
        return self.tracker.safe_block_number

    def finalized_block_number(self) -> int:
        return self.tracker.finalized_block_number

    def shutdown(self) -> None:
        self.async_handler.shutdown()

    def add_listener(self, listener: OnConsensusBroken) -> None:
        self.listeners.append(listener)

    def clear_listeners(self) -> None:
        self.listeners = []

    # --- backend updates -----------------------------------------------------

    def update_backend(self, backend: ConsensusBackend) -> None:
        """Refresh the observed state of one backend."""
        bs = self.get_backend_state(backend)
        if bs.is_banned():
            logger.debug("skipping backend %s - banned", backend.name)
            return

        # an unhealthy backend is checked again only once its ban is over
        if not backend.is_healthy() and not backend.forced_candidate:
            logger.warning("backend %s banned - not healthy", backend.name)
            self.ban(backend)
            return

        try:
            in_sync = self._is_in_sync(backend)
        except Exception as exc:
            logger.warning("error updating backend %s sync state: %s", backend.name, exc)
            return

        peer_count = 0
        if not backend.skip_peer_count_check:
            try:
                peer_count = self._get_peer_count(backend)
            except Exception as exc:
                logger.warning("error updating backend %s peer count: %s", backend.name, exc)
                return
            if peer_count == 0:
                logger.warning("peer count of %s responded with 200 and 0 peers", backend.name)
                backend.intermittent_errors.incr()
                return

        blocks: dict[str, tuple[int, str]] = {}
        for tag in ("latest", "safe", "finalized"):
            try:
                blocks[tag] = self._fetch_block(backend, tag)
            except Exception as exc:
                logger.warning(
                    "error updating backend %s - %s block will not be updated: %s",
                    backend.name, tag, exc,
                )
                return
            if blocks[tag][0] == 0:
                logger.warning(
                    "backend %s responded a 200 with blockheight 0 for %s block", backend.name, tag
                )
                backend.intermittent_errors.incr()
                return

        latest, latest_hash = blocks["latest"]
        safe = blocks["safe"][0]
        finalized = blocks["finalized"][0]

        changed = self._set_backend_state(
            backend, peer_count, in_sync, latest, latest_hash, safe, finalized
        )
        if changed:
            logger.debug(
                "backend %s state updated: peers=%d in_sync=%s latest=%d hash=%s safe=%d finalized=%d",
                backend.name, peer_count, in_sync, latest, latest_hash, safe, finalized,
            )

        expected = self._expected_block_tags(
            latest, bs.safe_block_number, safe, bs.finalized_block_number, finalized
        )
        if not expected and not backend.forced_candidate:
            logger.warning(
                "backend %s banned - unexpected block tags: old finalized=%d finalized=%d "
                "old safe=%d safe=%d latest=%d",
                backend.name, bs.finalized_block_number, finalized,
                bs.safe_block_number, safe, latest,
            )
            self.ban(backend)

    @staticmethod
    def _expected_block_tags(
        current_latest: int,
        old_safe: int,
        current_safe: int,
        old_finalized: int,
        current_finalized: int,
    ) -> bool:
        # finalized and safe never decrease, and finalized <= safe <= latest
        return (
            current_finalized >= old_finalized
            and current_safe >= old_safe
            and current_finalized <= current_safe
            and current_safe <= current_latest
        )

    def update_backend_group_consensus(self) -> None:
        """Resolve the group consensus from the state of the backends."""
        current = self.latest_block_number()
        candidates = self._consensus_candidates()

        lowest_latest = 0
        lowest_latest_hash = ""
        lowest_finalized = 0
        lowest_safe = 0
        for bs in candidates.values():
            if lowest_latest == 0 or bs.latest_block_number < lowest_latest:
                lowest_latest = bs.latest_block_number
                lowest_latest_hash = bs.latest_block_hash
            if lowest_finalized == 0 or bs.finalized_block_number < lowest_finalized:
                lowest_finalized = bs.finalized_block_number
            if lowest_safe == 0 or bs.safe_block_number < lowest_safe:
                lowest_safe = bs.safe_block_number

        proposed = lowest_latest
        proposed_hash = lowest_latest_hash
        has_consensus = False
        broken = False

        if lowest_latest > current:
            logger.debug("validating consensus on block %d", lowest_latest)

        # the proposed block must carry the same hash on every candidate
        if proposed > 0:
            while not has_consensus:
                all_agreed = True
                for be in candidates:
                    try:
                        actual, actual_hash = self._fetch_block(be, f"0x{proposed:x}")
                    except Exception as exc:
                        logger.warning("error updating backend %s: %s", be.name, exc)
                        continue
                    if proposed_hash == "":
                        proposed_hash = actual_hash
                    if actual != proposed or actual_hash != proposed_hash:
                        if current >= actual:
                            logger.warning(
                                "backend %s broke consensus: actual=%d hash=%s proposed=%d hash=%s",
                                be.name, actual, actual_hash, proposed, proposed_hash,
                            )
                            broken = True
                        all_agreed = False
                        break
                if all_agreed:
                    has_consensus = True
                else:
                    # walk one block back and try again
                    proposed = (proposed - 1) % _UINT64_MOD
                    proposed_hash = ""
                    logger.debug("no consensus, now trying block %d", proposed)

        if broken:
            for listener in self.listeners:
                listener()
            logger.info(
                "consensus broken: current=%d proposed=%d hash=%s", current, proposed, proposed_hash
            )

        self.tracker.latest_block_number = proposed
        self.tracker.safe_block_number = lowest_safe
        self.tracker.finalized_block_number = lowest_finalized

        group = [be for be in self.backend_group.backends if be in candidates]
        filtered = [be.name for be in self.backend_group.backends if be not in candidates]
        with self._group_lock:
            self._group = group

        logger.debug(
            "group state: proposed=%d consensus=%s filtered=%s",
            proposed, ", ".join(be.name for be in group), ", ".join(filtered),
        )

    # --- bans and state --------------------------------------------------------

    def is_banned(self, backend: ConsensusBackend) -> bool:
        bs = self._states[backend]
        with bs._lock:
            return bs.is_banned()

    def banned_until(self, backend: ConsensusBackend) -> float:
        bs = self._states[backend]
        with bs._lock:
            return bs.banned_until

    def ban(self, backend: ConsensusBackend) -> None:
        """Ban a backend for the ban period; forced candidates are never banned."""
        if backend.forced_candidate:
            return
        bs = self._states[backend]
        with bs._lock:
            bs.banned_until = self._clock() + self.ban_period.total_seconds()
            # a returning backend may start again from any block
            bs.latest_block_number = 0
            bs.safe_block_number = 0
            bs.finalized_block_number = 0

    def unban(self, backend: ConsensusBackend) -> None:
        bs = self._states[backend]
        with bs._lock:
            bs.banned_until = self._clock() - timedelta(hours=10).total_seconds()

    def reset(self) -> None:
        """Forget everything observed of every backend."""
        for be in self.backend_group.backends:
            self._states[be] = BackendState(clock=self._clock)

    def get_backend_state(self, backend: ConsensusBackend) -> BackendState:
        """A copy of the backend's state, safe to use without locking."""
        bs = self._states[backend]
        with bs._lock:
            return replace(bs)

    def get_last_update(self, backend: ConsensusBackend) -> float:
        bs = self._states[backend]
        with bs._lock:
            return bs.last_update

    def _set_backend_state(
        self,
        backend: ConsensusBackend,
        peer_count: int,
        in_sync: bool,
        latest: int,
        latest_hash: str,
        safe: int,
        finalized: int,
    ) -> bool:
        bs = self._states[backend]
        with bs._lock:
            changed = bs.latest_block_hash != latest_hash
            bs.peer_count = peer_count
            bs.in_sync = in_sync
            bs.latest_block_number = latest
            bs.latest_block_hash = latest_hash
            bs.safe_block_number = safe
            bs.finalized_block_number = finalized
            bs.last_update = self._clock()
        return changed

    # --- backend calls -------------------------------------------------------

    @staticmethod
    def _fetch_block(backend: ConsensusBackend, block: str) -> tuple[int, str]:
        result = backend.forward_rpc("eth_getBlockByNumber", block, False)
        if not isinstance(result, dict):
            raise ValueError(f"unexpected response to eth_getBlockByNumber on backend {backend.name}")
        number = _decode_uint64(result.get("number"))
        block_hash = result.get("hash")
        if not isinstance(block_hash, str):
            raise ValueError(f"unexpected block hash from backend {backend.name}")
        return number, block_hash

    @staticmethod
    def _get_peer_count(backend: ConsensusBackend) -> int:
        result = backend.forward_rpc("net_peerCount")
        if not isinstance(result, str):
            raise ValueError(f"unexpected response to net_peerCount on backend {backend.name}")
        return _decode_uint64(result)

    @staticmethod
    def _is_in_sync(backend: ConsensusBackend) -> bool:
        result = backend.forward_rpc("eth_syncing")
        if isinstance(result, bool):
            return not result
        if isinstance(result, str):
            return not _parse_bool(result)
        # an object describing the sync progress means still syncing
        return False

    # --- candidates ------------------------------------------------------------

    def _consensus_candidates(self) -> dict[ConsensusBackend, BackendState]:
        healthy = self.filter_candidates(self.backend_group.primaries())
        if healthy:
            return healthy
        return self.filter_candidates(self.backend_group.fallbacks())

    def filter_candidates(
        self, backends: Iterable[ConsensusBackend]
    ) -> dict[ConsensusBackend, BackendState]:
        """Backends fit to join the consensus, with a copy of their state.

        A candidate is not banned, healthy, has enough peers, is in sync, was
        updated recently and does not lag behind the highest latest block.
        """
        now = self._clock()
        threshold = self.max_update_threshold.total_seconds()
        candidates: dict[ConsensusBackend, BackendState] = {}
        for be in backends:
            bs = self.get_backend_state(be)
            if be.forced_candidate:
                candidates[be] = bs
                continue
            if bs.is_banned() or not be.is_healthy():
                continue
            if not be.skip_peer_count_check and bs.peer_count < self.min_peer_count:
                logger.debug(
                    "backend %s peer count %d too low for inclusion in consensus (min %d)",
                    be.name, bs.peer_count, self.min_peer_count,
                )
                continue
            if not bs.in_sync:
                continue
            if bs.last_update + threshold < now:
                continue
            candidates[be] = bs

        highest = max((bs.latest_block_number for bs in candidates.values()), default=0)
        return {
            be: bs
            for be, bs in candidates.items()
            if highest - bs.latest_block_number <= self.max_block_lag
        }