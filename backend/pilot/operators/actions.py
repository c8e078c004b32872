from __future__ import annotations

import logging
import re

from pilot.operators.base import ACTION_ALIASES, Action, ActionInputs, ActionType

logger = logging.getLogger(__name__)

_CALL = re.compile(r"^\s*([A-Za-z_]\w*)\s*\((.*)\)\s*$", re.DOTALL)
_ARG = re.compile(r"(\w+)\s*=\s*(['\"])(.*?)(?<!\\)\2", re.DOTALL)
_BOX_TOKENS = re.compile(r"<\|box_(?:start|end)\|>")

# Argument names the model uses interchangeably.
_INPUT_NAMES = {
    "start_box": "start_box",
    "start_point": "start_box",
    "point": "start_box",
    "end_box": "end_box",
    "end_point": "end_box",
    "content": "content",
    "text": "content",
    "key": "key",
    "hotkey": "key",
    "direction": "direction",
}

ACTION_SPACE = """\
click(start_box='[x1, y1, x2, y2]')
left_double(start_box='[x1, y1, x2, y2]')
right_single(start_box='[x1, y1, x2, y2]')
drag(start_box='[x1, y1, x2, y2]', end_box='[x3, y3, x4, y4]')
hotkey(key='ctrl c')
type(content='') # end content with "\\n" to submit the input
scroll(start_box='[x1, y1, x2, y2]', direction='down or up or right or left')
wait() # sleep, then take a screenshot to check for changes
finished()
call_user() # the task is unsolvable or needs the user's help"""


def parse_action(text: str) -> Action:
    """Parse one action string such as ``click(start_box='[1,2,3,4]')``.

    Unknown action names give ActionType.UNSUPPORTED; text that is not a
    call at all raises ValueError.
    """
    match = _CALL.match(text or "")
    if match is None:
        raise ValueError(f"Not an action call: {text!r}")
    name, body = match.group(1), match.group(2)

    inputs = ActionInputs()
    for key, _quote, value in _ARG.findall(body):
        field_name = _INPUT_NAMES.get(key)
        if field_name is None:
            logger.debug("Ignoring unknown action argument %s", key)
            continue
        value = value.replace("\\'", "'").replace('\\"', '"')
        if field_name in ("start_box", "end_box"):
            value = _BOX_TOKENS.sub("", value)
        setattr(inputs, field_name, value)

    action_type = ACTION_ALIASES.get(name.lower(), ActionType.UNSUPPORTED)
    return Action(type=action_type, inputs=inputs, raw=name)
