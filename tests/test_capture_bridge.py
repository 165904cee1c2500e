"""Unit tests for autosetup.capture.bridge — capture messages and step building."""

from __future__ import annotations

import json

import pytest

from autosetup.capture.bridge import (
    CAPTURE_ELEMENT,
    CAPTURE_READY,
    CAPTURE_SCAN,
    CAPTURE_STEP,
    CaptureBridge,
    CaptureError,
    CaptureMessage,
    new_session_token,
    step_from_capture,
    step_from_message,
)

TOKEN = "session-abc"


def _element_message(token: str = TOKEN, selector: str = "#save") -> dict:
    return {
        "type": CAPTURE_ELEMENT,
        "token": token,
        "element": {
            "selector": selector,
            "label": "Save",
            "tagName": "button",
            "rect": {"top": 1, "left": 2, "width": 30, "height": 10},
        },
    }


@pytest.fixture
def bridge() -> CaptureBridge:
    return CaptureBridge(token=TOKEN, builder_origin="https://builder.example.com/app/tours")


# ---------------------------------------------------------------------------
# 1. Message parsing
# ---------------------------------------------------------------------------

class TestCaptureMessage:

    def test_parse_element_message(self):
        message = CaptureMessage.parse(json.dumps(_element_message()))
        assert message.type == CAPTURE_ELEMENT
        assert message.element.selector == "#save"
        assert message.element.tag_name == "button"
        assert message.element.rect == {"top": 1.0, "left": 2.0, "width": 30.0, "height": 10.0}

    def test_parse_scan_message(self):
        raw = {"type": CAPTURE_SCAN, "token": TOKEN, "elements": [{"selector": "#a"}, {"selector": "#b"}]}
        message = CaptureMessage.parse(raw)
        assert [e.selector for e in message.elements] == ["#a", "#b"]

    def test_parse_ready_message(self):
        assert CaptureMessage.parse({"type": CAPTURE_READY, "token": TOKEN}).type == CAPTURE_READY

    @pytest.mark.parametrize(
        "raw",
        [
            "{broken",
            "[1, 2]",
            {"type": "SOMETHING_ELSE"},
            {"type": CAPTURE_ELEMENT, "element": {"label": "no selector"}},
            {"type": CAPTURE_SCAN, "elements": "nope"},
            {"type": CAPTURE_STEP, "step": {"stepType": "click"}},
        ],
    )
    def test_malformed_messages_raise(self, raw):
        with pytest.raises(CaptureError):
            CaptureMessage.parse(raw)

    def test_to_dict_matches_wire_shape(self):
        message = CaptureMessage.parse(_element_message())
        assert message.to_dict() == {
            "type": CAPTURE_ELEMENT,
            "token": TOKEN,
            "element": {
                "selector": "#save",
                "label": "Save",
                "tagName": "button",
                "rect": {"top": 1.0, "left": 2.0, "width": 30.0, "height": 10.0},
            },
        }

    def test_session_tokens_are_unique(self):
        assert new_session_token() != new_session_token()


# ---------------------------------------------------------------------------
# 2. Transports
# ---------------------------------------------------------------------------

class TestCaptureBridge:

    def test_post_message_from_builder_origin(self, bridge: CaptureBridge):
        message = bridge.receive_post_message(_element_message(), "https://BUILDER.example.com")
        assert message is not None
        assert message.transport == "postMessage"
        assert bridge.received == [message]

    def test_post_message_from_other_origin_is_ignored(self, bridge: CaptureBridge):
        assert bridge.receive_post_message(_element_message(), "https://evil.example.com") is None
        assert bridge.received == []

    def test_broadcast_channel_must_match(self, bridge: CaptureBridge):
        assert bridge.receive_broadcast(_element_message(), "other-channel") is None
        assert bridge.receive_broadcast(_element_message(), "tour-builder-capture").transport == "broadcast"

    def test_token_mismatch_is_ignored(self, bridge: CaptureBridge):
        assert bridge.receive_broadcast(_element_message(token="stale"), "tour-builder-capture") is None

    def test_malformed_post_message_is_dropped(self, bridge: CaptureBridge):
        assert bridge.receive_post_message({"type": "nope"}, "https://builder.example.com") is None

    def test_clipboard_full_message(self, bridge: CaptureBridge):
        message = bridge.receive_clipboard(json.dumps(_element_message()))
        assert message.transport == "clipboard"

    def test_clipboard_bare_selector(self, bridge: CaptureBridge):
        message = bridge.receive_clipboard('{"selector": "#invite", "label": "Invite"}')
        assert message.type == CAPTURE_ELEMENT
        assert message.token == TOKEN
        assert message.element.label == "Invite"

    def test_clipboard_garbage_raises(self, bridge: CaptureBridge):
        with pytest.raises(CaptureError):
            bridge.receive_clipboard("not json at all")

    def test_subscribers_are_notified_and_can_unsubscribe(self, bridge: CaptureBridge):
        seen = []
        unsubscribe = bridge.subscribe(CAPTURE_ELEMENT, seen.append)
        bridge.receive_clipboard('{"selector": "#a"}')
        unsubscribe()
        bridge.receive_clipboard('{"selector": "#b"}')
        assert [m.element.selector for m in seen] == ["#a"]

    def test_raising_subscriber_does_not_lose_message(self, bridge: CaptureBridge):
        def broken(_message):
            raise RuntimeError("boom")

        bridge.subscribe(CAPTURE_ELEMENT, broken)
        assert bridge.receive_clipboard('{"selector": "#a"}') is not None
        assert len(bridge.received) == 1

    def test_subscribe_unknown_type_raises(self, bridge: CaptureBridge):
        with pytest.raises(ValueError):
            bridge.subscribe("TOUR_CAPTURE_NOPE", print)


# ---------------------------------------------------------------------------
# 3. Steps from captures
# ---------------------------------------------------------------------------

class TestStepFromCapture:

    def test_click_capture_gets_one_action(self):
        step = step_from_capture("#save", step_type="click", title="Save it", step_id="step-1")
        assert step.title == "Save it"
        assert step.target_type == "page"
        assert step.is_required is True
        assert len(step.actions) == 1
        action = step.actions[0]
        assert (action.id, action.action_type, action.selector, action.action_order) == (
            "step-1-action-0", "click", "#save", 0,
        )

    def test_modal_capture_has_no_action(self):
        step = step_from_capture("#intro", step_type="modal")
        assert step.target_type == "modal"
        assert step.actions == []
        assert step.title == "New step"
        assert step.id.startswith("step-")

    def test_invalid_position_falls_back_to_auto(self):
        assert step_from_capture("#a", position="diagonal").position == "auto"

    def test_step_message_uses_config(self):
        message = CaptureMessage.parse(
            {
                "type": CAPTURE_STEP,
                "token": TOKEN,
                "step": {
                    "selector": "input[name=email]",
                    "stepType": "input",
                    "config": {"title": "Email", "description": "Type it", "position": "top"},
                },
            }
        )
        step = step_from_message(message)
        assert (step.title, step.description, step.position) == ("Email", "Type it", "top")
        assert step.actions[0].action_type == "input"

    def test_element_message_defaults_to_highlight(self):
        step = step_from_message(CaptureMessage.parse(_element_message()))
        assert step.title == "Save"
        assert step.actions[0].action_type == "highlight"

    def test_ready_message_is_not_a_step(self):
        with pytest.raises(CaptureError):
            step_from_message(CaptureMessage.parse({"type": CAPTURE_READY, "token": TOKEN}))
