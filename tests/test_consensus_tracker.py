import json

import pytest
import redis

from proxyd.consensus_tracker import (
    ConsensusTrackerState,
    InMemoryConsensusTracker,
    RedisConsensusTracker,
)


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.ttl = {}
        self.fail_get = False

    def get(self, key):
        if self.fail_get:
            raise redis.ConnectionError("connection refused")
        return self.data.get(key)

    def set(self, key, value, nx=False, px=None):
        if nx and key in self.data:
            return None
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.ttl[key] = px
        return True

    def eval(self, script, numkeys, *args):
        key, lock_value = args[0], args[1]
        if self.data.get(key) != str(lock_value).encode():
            return 0
        if "PEXPIRE" in script:
            self.ttl[key] = int(args[2])
            return 1
        del self.data[key]
        return 1


def _filled(tracker, latest, safe, finalized):
    tracker.latest_block_number = latest
    tracker.safe_block_number = safe
    tracker.finalized_block_number = finalized
    return tracker


def test_in_memory_set_and_get():
    tracker = _filled(InMemoryConsensusTracker(), 100, 50, 30)
    assert tracker.latest_block_number == 100
    assert tracker.safe_block_number == 50
    assert tracker.finalized_block_number == 30


def test_in_memory_valid_requires_all_numbers():
    tracker = InMemoryConsensusTracker()
    assert not tracker.valid()
    tracker.latest_block_number = 10
    tracker.safe_block_number = 5
    assert not tracker.valid()
    tracker.finalized_block_number = 1
    assert tracker.valid()


def test_in_memory_behind():
    low = _filled(InMemoryConsensusTracker(), 100, 50, 30)
    high = _filled(InMemoryConsensusTracker(), 100, 50, 31)
    assert low.behind(high)
    assert not high.behind(low)
    assert not low.behind(low)


def test_update_and_snapshot_copy():
    tracker = InMemoryConsensusTracker()
    state = ConsensusTrackerState(latest=7, safe=6, finalized=5)
    tracker.update(state)
    state.latest = 99
    snap = tracker.snapshot()
    assert snap == ConsensusTrackerState(latest=7, safe=6, finalized=5)
    snap.safe = 1
    assert tracker.safe_block_number == 6


def test_state_json_wire_format():
    state = ConsensusTrackerState(latest=0x64, safe=0x32, finalized=0x1E)
    assert state.to_json() == '{"latest":"0x64","safe":"0x32","finalized":"0x1e"}'


def test_state_json_round_trip():
    state = ConsensusTrackerState(latest=123456, safe=1234, finalized=12)
    assert ConsensusTrackerState.from_json(state.to_json()) == state


def test_state_json_missing_fields_default_to_zero():
    state = ConsensusTrackerState.from_json('{"latest":"0xa"}')
    assert state == ConsensusTrackerState(latest=10)


@pytest.mark.parametrize(
    "payload",
    ['{"latest":10}', '{"latest":"10"}', '{"latest":"0x"}', '{"latest":"0x01"}', "[]"],
)
def test_state_json_rejects_bad_numbers(payload):
    with pytest.raises(ValueError):
        ConsensusTrackerState.from_json(payload)


def test_key_format():
    tracker = RedisConsensusTracker(FakeRedis(), "ns")
    assert tracker.key("mutex") == "consensus:ns:mutex"


def test_redis_writes_local_reads_remote():
    tracker = _filled(RedisConsensusTracker(FakeRedis(), "ns"), 100, 50, 30)
    assert tracker.local.latest_block_number == 100
    assert tracker.latest_block_number == 0


def test_invalid_local_state_does_not_campaign():
    client = FakeRedis()
    tracker = RedisConsensusTracker(client, "ns")
    tracker.heartbeat()
    assert not tracker.leader
    assert tracker.key("mutex") not in client.data


def test_leader_election_and_publish(monkeypatch):
    monkeypatch.setenv("HOSTNAME", "node-a")
    client = FakeRedis()
    tracker = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    tracker.heartbeat()
    assert tracker.leader
    assert tracker.leader_name == "node-a"
    lock_value = client.data[tracker.key("mutex")].decode()
    stored = client.data[tracker.key(f"state:{lock_value}")]
    assert ConsensusTrackerState.from_json(stored) == tracker.local.snapshot()
    assert client.data[tracker.key(f"leader:{lock_value}")] == b"node-a"
    assert tracker.latest_block_number == 100
    assert tracker.finalized_block_number == 30


def test_leader_extends_and_republishes(monkeypatch):
    monkeypatch.setenv("HOSTNAME", "node-a")
    client = FakeRedis()
    tracker = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    tracker.heartbeat()
    tracker.latest_block_number = 101
    tracker.heartbeat()
    assert tracker.leader
    assert tracker.latest_block_number == 101


def test_follower_reads_leader_state(monkeypatch):
    monkeypatch.setenv("HOSTNAME", "node-a")
    client = FakeRedis()
    leader = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    leader.heartbeat()

    follower = _filled(RedisConsensusTracker(client, "ns"), 90, 40, 20)
    follower.heartbeat()
    assert not follower.leader
    assert follower.leader_name == "node-a"
    assert follower.remote.snapshot() == leader.local.snapshot()
    assert follower.safe_block_number == 50


def test_follower_skips_missing_state():
    client = FakeRedis()
    client.data["consensus:ns:mutex"] = b"other"
    follower = _filled(RedisConsensusTracker(client, "ns"), 90, 40, 20)
    follower.heartbeat()
    assert not follower.leader
    assert follower.remote.snapshot() == ConsensusTrackerState()


def test_follower_ignores_corrupt_state():
    client = FakeRedis()
    client.data["consensus:ns:mutex"] = b"other"
    client.data["consensus:ns:state:other"] = json.dumps({"latest": 5}).encode()
    follower = RedisConsensusTracker(client, "ns")
    follower.heartbeat()
    assert follower.latest_block_number == 0


def test_local_behind_remote_does_not_campaign():
    client = FakeRedis()
    tracker = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    tracker.remote.update(ConsensusTrackerState(latest=200, safe=50, finalized=30))
    tracker.heartbeat()
    assert not tracker.leader
    assert tracker.key("mutex") not in client.data


def test_read_error_releases_leadership():
    client = FakeRedis()
    tracker = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    tracker.heartbeat()
    assert tracker.leader
    client.fail_get = True
    tracker.heartbeat()
    assert not tracker.leader
    assert tracker.key("mutex") not in client.data


def test_lost_lock_gives_up_leadership():
    client = FakeRedis()
    tracker = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    tracker.heartbeat()
    client.data[tracker.key("mutex")] = b"someone-else"
    tracker.heartbeat()
    assert tracker.leader


def test_start_and_stop_runs_heartbeat():
    client = FakeRedis()
    tracker = _filled(RedisConsensusTracker(client, "ns"), 100, 50, 30)
    tracker.start()
    tracker.stop()
    assert tracker.leader
    assert tracker.latest_block_number == 100