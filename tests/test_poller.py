import asyncio

import pytest

from ompbrowser.poller import SelectionPoller

from conftest import NOW, reply

A = ("10.0.0.1", 7777)
B = ("10.0.0.2", 7777)


def make_poller(probe, results, debounce=0.1, interval=10.0):
    return SelectionPoller(
        probe,
        results.append,
        debounce=debounce,
        interval=interval,
        timeout=0.2,
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_switching_before_debounce_never_probes_first_target(probe):
    probe.status[A] = reply(name="A")
    probe.status[B] = reply(name="B")
    results = []
    poller = make_poller(probe, results)

    poller.select(A)
    await asyncio.sleep(0.02)
    poller.select(B)
    await asyncio.sleep(0.25)
    await poller.stop()

    assert probe.count("status", A) == 0
    assert probe.count("status", B) == 1
    assert [r.key for r in results] == [B]
    assert results[0].generation == 2


@pytest.mark.asyncio
async def test_first_poll_waits_for_debounce(probe):
    probe.status[A] = reply()
    poller = make_poller(probe, [], debounce=0.2)

    poller.select(A)
    await asyncio.sleep(0.1)
    assert probe.count("status", A) == 0
    await asyncio.sleep(0.2)
    assert probe.count("status", A) == 1
    await poller.stop()


@pytest.mark.asyncio
async def test_polls_repeat_at_interval(probe):
    probe.status[A] = reply()
    probe.players[A] = ["alice", "bob"]
    results = []
    poller = make_poller(probe, results, debounce=0.01, interval=0.05)

    poller.select(A)
    await asyncio.sleep(0.23)
    await poller.stop()

    assert 3 <= len(results) <= 6
    assert results[0].players == ["alice", "bob"]
    # rules were never answered
    assert results[0].rules is None


@pytest.mark.asyncio
async def test_reselecting_same_key_is_a_no_op(probe):
    probe.status[A] = reply()
    poller = make_poller(probe, [])

    assert poller.select(A)
    generation = poller.generation
    assert not poller.select(A)
    assert poller.generation == generation
    await poller.stop()


@pytest.mark.asyncio
async def test_failed_status_skips_the_tick(probe):
    results = []
    poller = make_poller(probe, results, debounce=0.01, interval=0.05)

    poller.select(A)
    await asyncio.sleep(0.12)
    await poller.stop()

    assert probe.count("status", A) >= 2
    assert results == []
    assert probe.count("rules", A) == 0


@pytest.mark.asyncio
async def test_clear_stops_polling(probe):
    probe.status[A] = reply()
    results = []
    poller = make_poller(probe, results, debounce=0.01, interval=0.05)

    poller.select(A)
    await asyncio.sleep(0.03)
    poller.clear()
    seen = probe.count("status", A)
    await asyncio.sleep(0.15)

    assert probe.count("status", A) == seen
    assert poller.target is None
    assert not poller.active
    assert not poller.is_current(results[0].generation, A)


class FlakyProbe:
    """Raises an unexpected error on the first status call only."""

    def __init__(self):
        self.status_calls = 0

    async def probe_status(self, host, port, timeout):
        self.status_calls += 1
        if self.status_calls == 1:
            raise RuntimeError("decoder bug")
        return reply()

    async def probe_rules(self, host, port, timeout):
        return {}

    async def probe_players(self, host, port, timeout):
        return []


@pytest.mark.asyncio
async def test_unexpected_error_does_not_end_polling():
    flaky = FlakyProbe()
    results = []
    poller = make_poller(flaky, results, debounce=0.01, interval=0.05)

    poller.select(A)
    await asyncio.sleep(0.15)

    assert poller.active
    assert flaky.status_calls >= 2
    assert results and results[0].key == A
    await poller.stop()
