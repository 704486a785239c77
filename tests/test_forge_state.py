import asyncio
import logging
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from forge_models import Character  # noqa: E402
from forge_state import (  # noqa: E402
    EMPTY_CAPTION,
    ERROR_MESSAGES,
    Action,
    ActionStatus,
    CharacterForge,
    ViewKind,
    select_view,
)

THANE = Character(
    name="Thane",
    character_class="Warrior",
    description="...",
    image_url="img://1",
    health=100,
    strength=80,
    mana=10,
    agility=40,
)


class FakeService:
    def __init__(self, character=THANE, fail=None):
        self.character = character
        self.fail = fail or set()
        self.calls = []

    async def generate_character(self):
        self.calls.append(("generate",))
        if "generate" in self.fail:
            raise RuntimeError("boom")
        return self.character

    async def cartoonify_character(self, character):
        self.calls.append(("cartoonify", character))
        if "cartoonify" in self.fail:
            raise RuntimeError("out of ink")
        return character.with_image(character.image_url + "-cartoon")

    async def generate_backstory(self, character):
        self.calls.append(("backstory", character))
        if "backstory" in self.fail:
            raise RuntimeError("writer's block")
        return character.with_backstory("Born in the frozen north.")


class GatedService(FakeService):
    """Blocks every call until ``release`` is set so mid-flight state can be inspected."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def _wait(self):
        self.started.set()
        await self.release.wait()

    async def generate_character(self):
        await self._wait()
        return await super().generate_character()

    async def cartoonify_character(self, character):
        await self._wait()
        return await super().cartoonify_character(character)

    async def generate_backstory(self, character):
        await self._wait()
        return await super().generate_backstory(character)


def exclusive_views(forge):
    conditions = {
        "busy": forge.is_any_action_in_progress,
        "error": not forge.is_any_action_in_progress and forge.error is not None,
        "character": not forge.is_any_action_in_progress and not forge.error and forge.character is not None,
        "empty": not forge.is_any_action_in_progress and not forge.error and forge.character is None,
    }
    return [name for name, active in conditions.items() if active]


def test_initial_state_is_empty():
    forge = CharacterForge(FakeService())
    assert forge.character is None
    assert forge.error is None
    assert not forge.is_any_action_in_progress
    assert all(status is ActionStatus.IDLE for status in forge.statuses.values())
    view = forge.view()
    assert view.kind is ViewKind.EMPTY
    assert view.caption == EMPTY_CAPTION


def test_generate_character_success():
    forge = CharacterForge(FakeService())
    asyncio.run(forge.generate_character())

    assert forge.character == THANE
    assert forge.error is None
    assert not forge.is_generating
    assert forge.statuses[Action.GENERATE] is ActionStatus.SUCCEEDED
    assert forge.view().kind is ViewKind.CHARACTER


def test_generate_character_failure_sets_fixed_message(caplog):
    forge = CharacterForge(FakeService(fail={"generate"}))
    with caplog.at_level(logging.ERROR, logger="forge_state"):
        asyncio.run(forge.generate_character())

    assert forge.character is None
    assert forge.error == ERROR_MESSAGES[Action.GENERATE]
    assert not forge.is_generating
    assert forge.statuses[Action.GENERATE] is ActionStatus.FAILED
    assert "boom" in caplog.text


def test_failed_regeneration_drops_previous_character():
    service = FakeService()
    forge = CharacterForge(service)
    asyncio.run(forge.generate_character())
    service.fail.add("generate")
    asyncio.run(forge.generate_character())

    assert forge.character is None
    assert forge.error == ERROR_MESSAGES[Action.GENERATE]


@pytest.mark.parametrize("method", ["cartoonify", "generate_backstory"])
def test_follow_up_actions_without_character_are_noops(method):
    service = FakeService()
    forge = CharacterForge(service)
    forge.error = "left over"
    asyncio.run(getattr(forge, method)())

    assert service.calls == []
    assert forge.character is None
    assert forge.error == "left over"
    assert all(status is ActionStatus.IDLE for status in forge.statuses.values())


def test_cartoonify_replaces_only_image():
    forge = CharacterForge(FakeService())
    asyncio.run(forge.generate_character())
    asyncio.run(forge.cartoonify())

    assert forge.character.image_url == "img://1-cartoon"
    assert forge.character.name == "Thane"
    assert forge.character.character_class == "Warrior"
    assert forge.character.stats == THANE.stats
    assert forge.character.backstory is None
    assert forge.error is None
    assert not forge.is_cartoonifying


def test_backstory_adds_only_backstory():
    forge = CharacterForge(FakeService())
    asyncio.run(forge.generate_character())
    asyncio.run(forge.generate_backstory())

    assert forge.character.backstory == "Born in the frozen north."
    assert forge.character.with_backstory(None) == THANE
    assert forge.statuses[Action.BACKSTORY] is ActionStatus.SUCCEEDED


def test_cartoonify_failure_keeps_character_and_reports_error():
    service = FakeService(fail={"cartoonify"})
    forge = CharacterForge(service)
    asyncio.run(forge.generate_character())
    asyncio.run(forge.cartoonify())

    assert forge.character == THANE
    assert forge.error == ERROR_MESSAGES[Action.CARTOONIFY]
    # Error outranks the character view.
    assert forge.view().kind is ViewKind.ERROR


def test_backstory_failure_message():
    forge = CharacterForge(FakeService(fail={"backstory"}))
    asyncio.run(forge.generate_character())
    asyncio.run(forge.generate_backstory())
    assert forge.error == ERROR_MESSAGES[Action.BACKSTORY]


def test_new_attempt_clears_previous_error():
    service = FakeService(fail={"cartoonify"})
    forge = CharacterForge(service)
    asyncio.run(forge.generate_character())
    asyncio.run(forge.cartoonify())
    assert forge.error is not None

    asyncio.run(forge.generate_backstory())
    assert forge.error is None
    assert forge.character.backstory


def test_generate_clears_character_while_in_flight():
    async def scenario():
        service = GatedService()
        forge = CharacterForge(service)
        forge.character = THANE
        forge.error = "old"
        task = asyncio.create_task(forge.generate_character())
        await service.started.wait()

        assert forge.is_generating
        assert forge.character is None
        assert forge.error is None
        view = forge.view()
        assert view.kind is ViewKind.BUSY
        assert view.caption == "Forging a new legend..."
        assert forge.snapshot()["buttons"]["generate"] == {"label": "Summoning...", "disabled": True}
        assert exclusive_views(forge) == ["busy"]

        service.release.set()
        await task
        assert not forge.is_generating
        assert forge.character == THANE

    asyncio.run(scenario())


def test_cartoonify_keeps_character_while_in_flight():
    async def scenario():
        service = GatedService()
        forge = CharacterForge(service)
        forge.character = THANE
        task = asyncio.create_task(forge.cartoonify())
        await service.started.wait()

        assert forge.is_cartoonifying
        assert forge.character == THANE
        assert forge.view().caption == "Applying cartoon magic..."
        buttons = forge.snapshot()["buttons"]
        assert buttons["cartoonify"]["label"] == "Animating..."
        assert all(info["disabled"] for info in buttons.values())

        service.release.set()
        await task
        assert forge.character.image_url == "img://1-cartoon"

    asyncio.run(scenario())


def test_busy_caption_priority_when_flags_overlap():
    forge = CharacterForge(FakeService())
    forge.statuses[Action.BACKSTORY] = ActionStatus.IN_FLIGHT
    assert select_view(forge).caption == "Writing an epic tale..."
    forge.statuses[Action.CARTOONIFY] = ActionStatus.IN_FLIGHT
    assert select_view(forge).caption == "Applying cartoon magic..."
    forge.statuses[Action.GENERATE] = ActionStatus.IN_FLIGHT
    assert select_view(forge).caption == "Forging a new legend..."


def test_views_stay_exclusive_across_a_session():
    service = FakeService()
    forge = CharacterForge(service)
    observed = [exclusive_views(forge)]
    for action, fail in [
        (Action.CARTOONIFY, set()),
        (Action.GENERATE, set()),
        (Action.CARTOONIFY, {"cartoonify"}),
        (Action.BACKSTORY, set()),
        (Action.GENERATE, {"generate"}),
        (Action.BACKSTORY, set()),
    ]:
        service.fail = fail
        asyncio.run(forge.run(action))
        observed.append(exclusive_views(forge))

    assert all(len(views) == 1 for views in observed)
    assert [views[0] for views in observed] == [
        "empty", "empty", "character", "error", "character", "error", "error",
    ]


def test_button_states_follow_character_presence():
    forge = CharacterForge(FakeService())
    buttons = forge.snapshot()["buttons"]
    assert buttons["generate"] == {"label": "Character", "disabled": False}
    assert buttons["cartoonify"]["disabled"] is True
    assert buttons["backstory"]["disabled"] is True

    asyncio.run(forge.generate_character())
    buttons = forge.snapshot()["buttons"]
    assert not any(info["disabled"] for info in buttons.values())


def test_run_accepts_strings_and_rejects_unknown():
    forge = CharacterForge(FakeService())
    asyncio.run(forge.run("generate"))
    assert forge.character == THANE
    with pytest.raises(ValueError):
        asyncio.run(forge.run("summon"))


def test_snapshot_shape():
    forge = CharacterForge(FakeService())
    asyncio.run(forge.generate_character())
    snapshot = forge.snapshot()
    assert snapshot["view"] == "character"
    assert snapshot["error"] is None
    assert snapshot["character"]["class"] == "Warrior"
    assert snapshot["statuses"] == {"generate": "succeeded", "cartoonify": "idle", "backstory": "idle"}
    assert snapshot["busy"]["any"] is False


def test_service_returning_wrong_type_counts_as_failure():
    class SloppyService(FakeService):
        async def generate_character(self):
            return {"name": "Thane"}

    forge = CharacterForge(SloppyService())
    asyncio.run(forge.generate_character())

    assert forge.character is None
    assert forge.error == ERROR_MESSAGES[Action.GENERATE]
    assert forge.statuses[Action.GENERATE] is ActionStatus.FAILED
