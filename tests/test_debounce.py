import asyncio

import pytest

from cueline.core.pipeline.debounce import AdaptiveDelayCalculator, DebounceConfig, DebounceTimer


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def calculator(clock):
    return AdaptiveDelayCalculator(DebounceConfig(), clock=clock)


def test_complete_questions_use_quick_delays(calculator):
    assert calculator.compute("What do you mean by that?") == 2.0
    assert calculator.compute("What is a stack?") == 2.5
    assert calculator.compute("What is the time complexity of sorting an array?") == 4.0


def test_incomplete_text_adds_complexity_and_warmup_padding(calculator, clock):
    delay = calculator.compute("so the algorithm")
    assert delay == pytest.approx(4.0 + 0.3 * 2.0 + 1.0)

    clock.now = 1000.0
    assert calculator.compute("so the algorithm") == pytest.approx(4.0 + 0.3 * 2.0)
    assert calculator.metrics()["total_decisions"] == 2


def test_long_explanations_wait_longer(calculator, clock):
    clock.now = 1000.0
    text = "so let's say you are given a string and the problem is"

    assert calculator.compute(text) == 12.0


def test_vad_pause_selects_base_delay(calculator):
    assert calculator.vad_delay(None) == 4.0
    assert calculator.vad_delay(5) == 2.5
    assert calculator.vad_delay(20) == 4.0
    assert calculator.vad_delay(30) == 5.5


def test_blank_text_uses_base_delay(calculator):
    assert calculator.compute("   ") == 8.0


def test_timer_coalesces_fragment_burst():
    fired = []

    async def scenario():
        timer = DebounceTimer(fired.append, fallback_seconds=0.05)
        timer.push("what is")
        await asyncio.sleep(0.01)
        timer.push("binary search")
        assert timer.pending_text == "what is binary search"
        await asyncio.sleep(0.15)
        assert not timer.active

    asyncio.run(scenario())

    assert fired == ["what is binary search"]


def test_timer_uses_fallback_when_adaptive_disabled(calculator):
    calculator.config.adaptive_enabled = False

    async def scenario():
        timer = DebounceTimer(lambda text: None, calculator=calculator, fallback_seconds=0.2)
        delay = timer.push("What is a stack?")
        timer.cancel()
        return delay

    assert asyncio.run(scenario()) == 0.2


def test_cancel_discards_pending_text():
    fired = []

    async def scenario():
        timer = DebounceTimer(fired.append, fallback_seconds=0.02)
        timer.push("hello there")
        timer.cancel()
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert fired == []
