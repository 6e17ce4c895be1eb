import pytest

from chat_engine.typewriter import TypewriterRenderer
from conftest import wait_until


async def test_reveal_never_passes_confirmed_text():
    seen = []
    renderer = TypewriterRenderer(interval=0.001)
    renderer.on_reveal = lambda text: seen.append((renderer.revealed_length, renderer.confirmed_length, text))

    renderer.push("Hello")
    renderer.push(", world")
    await wait_until(lambda: not renderer.is_animating)

    assert renderer.visible_text == "Hello, world"
    assert [revealed for revealed, _, _ in seen] == list(range(1, 13))
    assert all(revealed <= confirmed for revealed, confirmed, _ in seen)
    assert all("Hello, world".startswith(text) for _, _, text in seen)


async def test_only_one_reveal_timer_runs():
    renderer = TypewriterRenderer(interval=0.05)
    renderer.push("ab")
    timer = renderer._timer
    renderer.push("cd")

    assert renderer._timer is timer
    renderer.close()


async def test_finalize_reveals_everything_and_stops_timer():
    seen = []
    renderer = TypewriterRenderer(seen.append, interval=0.05)
    renderer.push("partial")

    text = renderer.finalize("partial and final")

    assert text == "partial and final"
    assert renderer.revealed_length == renderer.confirmed_length == len(text)
    assert not renderer.is_animating
    assert seen[-1] == "partial and final"


async def test_close_stops_reveal_and_ignores_later_pushes():
    seen = []
    renderer = TypewriterRenderer(seen.append, interval=0.05)
    renderer.push("abc")
    renderer.close()
    renderer.push("def")

    assert not renderer.is_animating
    assert renderer.confirmed_text == "abc"
    assert renderer.revealed_length == 0
    assert seen == []


async def test_chars_per_tick_controls_reveal_step():
    renderer = TypewriterRenderer(interval=0.001, chars_per_tick=4)
    steps = []
    renderer.on_reveal = lambda text: steps.append(len(text))
    renderer.push("abcdefghij")
    await wait_until(lambda: not renderer.is_animating)
    assert steps == [4, 8, 10]


def test_chars_per_tick_must_be_positive():
    with pytest.raises(ValueError):
        TypewriterRenderer(chars_per_tick=0)
