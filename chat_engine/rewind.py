"""Edit and regenerate: truncate a transcript and say what to resend."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import List, Sequence

from .exceptions import RewindError
from .models import Role, Turn


@dataclass
class RewindPlan:
    """The transcript after rewinding and the turns to rebuild context from."""

    kept: List[Turn]
    context: List[Turn]
    user_turn: Turn
    removed: List[Turn]


def _locate(turns: Sequence[Turn], turn_id: str) -> int:
    for index, turn in enumerate(turns):
        if turn.id == turn_id:
            return index
    raise RewindError(f"No turn '{turn_id}' in transcript")


def plan_edit(turns: Sequence[Turn], turn_id: str, new_text: str) -> RewindPlan:
    """Replace a user turn's text and drop everything after it."""
    if not new_text or not new_text.strip():
        raise ValueError("edited text must not be empty")
    index = _locate(turns, turn_id)
    target = turns[index]
    if target.role is not Role.USER:
        raise RewindError("only user turns can be edited")

    edited = dataclasses.replace(target, text=new_text)
    kept = list(turns[:index]) + [edited]
    return RewindPlan(kept=kept, context=list(kept), user_turn=edited, removed=list(turns[index + 1 :]))


def plan_regenerate(turns: Sequence[Turn], assistant_turn_id: str) -> RewindPlan:
    """Remove the assistant tail and resend from the user turn before it."""
    index = _locate(turns, assistant_turn_id)
    target = turns[index]
    if target.role is not Role.ASSISTANT:
        raise RewindError("only assistant turns can be regenerated")
    if index != len(turns) - 1:
        raise RewindError("only the latest assistant turn can be regenerated")

    for user_index in range(index - 1, -1, -1):
        if turns[user_index].role is Role.USER:
            break
    else:
        raise RewindError("no user turn precedes the assistant turn")

    kept = list(turns[:index])
    return RewindPlan(kept=kept, context=list(kept), user_turn=turns[user_index], removed=[target])
