"""Tests for the response-type matcher and item flattening."""

from __future__ import annotations

import pytest

from parley.core.items import (
    NESTING,
    Nesting,
    create_local_message_for_inline_error,
    flatten_item,
    input_item_to_local_item,
    is_silent_user_defined,
    nesting_of,
    output_item_to_local_item,
)
from parley.core.models import MessageResponse, ResponseType, create_request_for_text


def _text(value: str) -> dict:
    return {"response_type": "text", "text": value}


def _flatten(item: dict):
    message = MessageResponse(output={"generic": [item]})
    local = output_item_to_local_item(item, message)
    return flatten_item(local, message)


class TestMatcher:
    """Every response type has a nesting rule."""

    def test_nesting_table_covers_every_response_type(self):
        assert set(NESTING) == set(ResponseType)

    def test_unknown_response_type_has_no_children(self):
        assert nesting_of({"response_type": "my_widget"}) is Nesting.NONE

    def test_only_show_panel_buttons_nest(self):
        assert nesting_of({"response_type": "button", "button_type": "url"}) is Nesting.NONE
        assert nesting_of({"response_type": "button", "button_type": "show_panel"}) is Nesting.PANEL

    @pytest.mark.parametrize(
        "item, expected",
        [
            ({"response_type": "user_defined", "user_defined": {"silent": True}}, True),
            ({"response_type": "user_defined", "user_defined": {}}, False),
            ({"response_type": "text", "user_defined": {"silent": True}}, False),
        ],
    )
    def test_silent_user_defined(self, item, expected):
        assert is_silent_user_defined(item) is expected


class TestFlatten:
    def test_card_keeps_supported_body_and_footer_items(self):
        card = {
            "response_type": "card",
            "body": [_text("a"), {"response_type": "card", "body": []}],
            "footer": [{"response_type": "button", "button_type": "post_back", "label": "Go"}, _text("x")],
        }
        parent, *children = _flatten(card)

        assert len(parent.ui_state.body_ids) == 1
        assert len(parent.ui_state.footer_ids) == 1
        assert [c.response_type for c in children] == ["text", "button"]
        assert all(c.full_message_id == parent.full_message_id for c in children)

    def test_carousel_holds_cards_only_and_recurses(self):
        carousel = {
            "response_type": "carousel",
            "items": [{"response_type": "card", "body": [_text("inside")]}, _text("loose")],
        }
        parent, card, text_item = _flatten(carousel)

        assert parent.ui_state.items_ids == (card.id,)
        assert card.ui_state.body_ids == (text_item.id,)
        assert text_item.item["text"] == "inside"

    def test_grid_rows_and_cells(self):
        grid = {
            "response_type": "grid",
            "rows": [{"cells": [{"items": [_text("c1")]}, {"items": [{"response_type": "button"}]}]}],
        }
        parent, text_item = _flatten(grid)

        assert parent.ui_state.grid_ids == (((text_item.id,), ()),)

    def test_show_panel_footer_cannot_open_another_panel(self):
        button = {
            "response_type": "button",
            "button_type": "show_panel",
            "panel": {
                "body": [_text("details")],
                "footer": [
                    {"response_type": "button", "button_type": "show_panel"},
                    {"response_type": "button", "button_type": "post_back"},
                ],
            },
        }
        parent, *children = _flatten(button)

        assert len(parent.ui_state.body_ids) == 1
        assert len(parent.ui_state.footer_ids) == 1
        assert children[-1].item["button_type"] == "post_back"

    def test_nested_children_skip_fade_animation(self):
        _, child = _flatten({"response_type": "card", "body": [_text("a")]})
        assert child.ui_state.disable_fade_animation is True


class TestLocalItems:
    def test_streamed_item_id_derives_from_message_and_stream_id(self):
        message = MessageResponse()
        local = output_item_to_local_item({"response_type": "text", "streaming_metadata": {"id": "7"}}, message)
        assert local.id == f"{message.id}-7"

    def test_history_items_are_not_announced(self):
        message = MessageResponse(history={"from_history": True})
        assert output_item_to_local_item(_text("old"), message).ui_state.needs_announcement is False

    def test_request_item_prefers_label(self):
        request = create_request_for_text("opt-1", label="First option")
        local = input_item_to_local_item(request)
        assert local.item["text"] == "First option"
        assert local.full_message_id == request.id

    def test_inline_error_message(self):
        local, message = create_local_message_for_inline_error("oops", agent_message_type="inline_error")
        assert local.response_type == ResponseType.INLINE_ERROR.value
        assert message.items[0]["agent_message_type"] == "inline_error"
