"""Request/loading/error orchestration for the character forge.

One ``CharacterForge`` holds the current character, a single error slot and
one status per action. Views are derived from that state by ``select_view``
in a fixed priority order (busy, error, character, empty), so exactly one
view applies at any time.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from forge_models import Character

logger = logging.getLogger(__name__)


class Action(str, Enum):
    GENERATE = "generate"
    CARTOONIFY = "cartoonify"
    BACKSTORY = "backstory"


class ActionStatus(str, Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ViewKind(str, Enum):
    BUSY = "busy"
    ERROR = "error"
    CHARACTER = "character"
    EMPTY = "empty"


ERROR_MESSAGES = {
    Action.GENERATE: "Failed to generate a character. The AI may be sleeping on the job. Please try again.",
    Action.CARTOONIFY: "Failed to apply cartoon effect. The AI might be out of ink. Please try again.",
    Action.BACKSTORY: "Failed to write backstory. The AI might have writer's block. Please try again.",
}

BUSY_CAPTIONS = {
    Action.GENERATE: "Forging a new legend...",
    Action.CARTOONIFY: "Applying cartoon magic...",
    Action.BACKSTORY: "Writing an epic tale...",
}

BUTTON_LABELS = {
    Action.GENERATE: "Character",
    Action.CARTOONIFY: "Cartoon",
    Action.BACKSTORY: "Backstory",
}

BUTTON_BUSY_LABELS = {
    Action.GENERATE: "Summoning...",
    Action.CARTOONIFY: "Animating...",
    Action.BACKSTORY: "Writing...",
}

EMPTY_CAPTION = "Your hero awaits their creation."


@dataclass(frozen=True)
class ForgeView:
    kind: ViewKind
    caption: str = ""
    error: Optional[str] = None
    character: Optional[Character] = None


class CharacterForge:
    """Owns one session's character and runs the three user actions.

    ``service`` must provide the coroutines ``generate_character()``,
    ``cartoonify_character(character)`` and ``generate_backstory(character)``,
    each returning a ``Character``. Any exception they raise is turned into
    the fixed message for that action and logged.

    Actions do not guard against each other; callers disable the triggers
    while ``is_any_action_in_progress`` is true.
    """

    def __init__(self, service: Any):
        self.service = service
        self.character: Optional[Character] = None
        self.error: Optional[str] = None
        self.statuses: Dict[Action, ActionStatus] = {action: ActionStatus.IDLE for action in Action}

    @property
    def is_generating(self) -> bool:
        return self.statuses[Action.GENERATE] is ActionStatus.IN_FLIGHT

    @property
    def is_cartoonifying(self) -> bool:
        return self.statuses[Action.CARTOONIFY] is ActionStatus.IN_FLIGHT

    @property
    def is_writing_backstory(self) -> bool:
        return self.statuses[Action.BACKSTORY] is ActionStatus.IN_FLIGHT

    @property
    def is_any_action_in_progress(self) -> bool:
        return self.is_generating or self.is_cartoonifying or self.is_writing_backstory

    async def generate_character(self) -> None:
        await self._perform(Action.GENERATE, self.service.generate_character, clear_character=True)

    async def cartoonify(self) -> None:
        character = self.character
        if character is None:
            return
        await self._perform(Action.CARTOONIFY, lambda: self.service.cartoonify_character(character))

    async def generate_backstory(self) -> None:
        character = self.character
        if character is None:
            return
        await self._perform(Action.BACKSTORY, lambda: self.service.generate_backstory(character))

    async def run(self, action: Union[Action, str]) -> None:
        try:
            action = Action(action)
        except ValueError:
            raise ValueError(f"Unknown action: {action}") from None
        if action is Action.GENERATE:
            await self.generate_character()
        elif action is Action.CARTOONIFY:
            await self.cartoonify()
        else:
            await self.generate_backstory()

    async def _perform(
        self,
        action: Action,
        call: Callable[[], Awaitable[Character]],
        clear_character: bool = False,
    ) -> None:
        self.statuses[action] = ActionStatus.IN_FLIGHT
        self.error = None
        if clear_character:
            self.character = None
        outcome = ActionStatus.FAILED
        try:
            result = await call()
            if not isinstance(result, Character):
                raise TypeError(f"Service returned {type(result).__name__}, expected Character")
        except Exception:
            logger.exception("Action %s failed", action.value)
            self.error = ERROR_MESSAGES[action]
        else:
            self.character = result
            outcome = ActionStatus.SUCCEEDED
            logger.info("Action %s succeeded for %s", action.value, result.name)
        finally:
            # Status leaves IN_FLIGHT only after character/error are settled.
            self.statuses[action] = outcome

    def view(self) -> ForgeView:
        return select_view(self)

    def snapshot(self) -> Dict[str, Any]:
        view = self.view()
        return {
            "view": view.kind.value,
            "caption": view.caption,
            "error": self.error,
            "character": self.character.to_dict() if self.character else None,
            "statuses": {action.value: status.value for action, status in self.statuses.items()},
            "busy": {
                "generating": self.is_generating,
                "cartoonifying": self.is_cartoonifying,
                "writing_backstory": self.is_writing_backstory,
                "any": self.is_any_action_in_progress,
            },
            "buttons": button_states(self),
        }


def select_view(forge: CharacterForge) -> ForgeView:
    if forge.is_any_action_in_progress:
        if forge.is_generating:
            caption = BUSY_CAPTIONS[Action.GENERATE]
        elif forge.is_cartoonifying:
            caption = BUSY_CAPTIONS[Action.CARTOONIFY]
        else:
            caption = BUSY_CAPTIONS[Action.BACKSTORY]
        return ForgeView(kind=ViewKind.BUSY, caption=caption)
    if forge.error:
        return ForgeView(kind=ViewKind.ERROR, error=forge.error)
    if forge.character is not None:
        return ForgeView(kind=ViewKind.CHARACTER, character=forge.character)
    return ForgeView(kind=ViewKind.EMPTY, caption=EMPTY_CAPTION)


def button_states(forge: CharacterForge) -> Dict[str, Dict[str, Any]]:
    busy = forge.is_any_action_in_progress
    states: Dict[str, Dict[str, Any]] = {}
    for action in Action:
        in_flight = forge.statuses[action] is ActionStatus.IN_FLIGHT
        needs_character = action is not Action.GENERATE
        states[action.value] = {
            "label": BUTTON_BUSY_LABELS[action] if in_flight else BUTTON_LABELS[action],
            "disabled": busy or (needs_character and forge.character is None),
        }
    return states
