"""Response-item matcher and output item → store entry flattening.

Response items arrive as nested JSON: a card has a body and a footer, a
carousel holds cards, a grid holds rows of cells that hold items, and a
``show_panel`` button carries a whole panel. The store keeps them flat: each
nested item becomes its own ``MessageItem`` and the parent records only the
ids of its children.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from parley.core.models import (
    ButtonType,
    ItemUIState,
    Message,
    MessageItem,
    MessageRequest,
    MessageResponse,
    ResponseType,
    create_response_for_text,
    stream_item_id,
)
from parley.utils import deep_freeze, new_id

log = logging.getLogger("parley.items")


class Nesting(Enum):
    NONE = "none"
    BODY_FOOTER = "body_footer"
    CAROUSEL = "carousel"
    GRID = "grid"
    PANEL = "panel"


# One entry per response type; a missing member is a bug caught by
# tests/test_items.py rather than a silent fallthrough.
NESTING: dict[ResponseType, Nesting] = {
    ResponseType.TEXT: Nesting.NONE,
    ResponseType.OPTION: Nesting.NONE,
    ResponseType.CARD: Nesting.BODY_FOOTER,
    ResponseType.CAROUSEL: Nesting.CAROUSEL,
    ResponseType.GRID: Nesting.GRID,
    ResponseType.BUTTON: Nesting.PANEL,
    ResponseType.IMAGE: Nesting.NONE,
    ResponseType.TABLE: Nesting.NONE,
    ResponseType.DATE: Nesting.NONE,
    ResponseType.PAUSE: Nesting.NONE,
    ResponseType.CONNECT_TO_AGENT: Nesting.NONE,
    ResponseType.INLINE_ERROR: Nesting.NONE,
    ResponseType.USER_DEFINED: Nesting.NONE,
    ResponseType.IFRAME: Nesting.NONE,
    ResponseType.VIDEO: Nesting.NONE,
    ResponseType.AUDIO: Nesting.NONE,
    ResponseType.CONVERSATIONAL_SEARCH: Nesting.NONE,
    ResponseType.PREVIEW_CARD: Nesting.NONE,
}

_BODY_TYPES = frozenset(
    {
        ResponseType.TEXT,
        ResponseType.IMAGE,
        ResponseType.VIDEO,
        ResponseType.AUDIO,
        ResponseType.IFRAME,
        ResponseType.TABLE,
        ResponseType.DATE,
        ResponseType.OPTION,
        ResponseType.BUTTON,
        ResponseType.INLINE_ERROR,
        ResponseType.USER_DEFINED,
        ResponseType.PREVIEW_CARD,
        ResponseType.CONVERSATIONAL_SEARCH,
        ResponseType.CARD,
        ResponseType.GRID,
    }
)


def response_type_of(item: Mapping[str, Any]) -> ResponseType | None:
    """Return the known response type of ``item``; ``None`` for custom tags."""
    try:
        return ResponseType(item.get("response_type"))
    except ValueError:
        return None


def nesting_of(item: Mapping[str, Any]) -> Nesting:
    rtype = response_type_of(item)
    if rtype is None:
        return Nesting.NONE
    nesting = NESTING[rtype]
    if nesting is Nesting.PANEL and not is_show_panel_button(item):
        return Nesting.NONE
    return nesting


def is_show_panel_button(item: Mapping[str, Any]) -> bool:
    return (
        item.get("response_type") == ResponseType.BUTTON.value
        and item.get("button_type") == ButtonType.SHOW_PANEL.value
    )


def is_silent_user_defined(item: Mapping[str, Any]) -> bool:
    if item.get("response_type") != ResponseType.USER_DEFINED.value:
        return False
    user_defined = item.get("user_defined")
    return isinstance(user_defined, Mapping) and bool(user_defined.get("silent"))


def supported_in_body(root: Mapping[str, Any], nested: Mapping[str, Any]) -> bool:
    rtype = response_type_of(nested)
    if rtype is None or rtype not in _BODY_TYPES:
        return False
    root_type = response_type_of(root)
    if rtype is ResponseType.CARD:
        # Cards only nest inside carousels.
        return root_type is ResponseType.CAROUSEL
    if root_type is ResponseType.CAROUSEL:
        return False
    if root_type is ResponseType.GRID:
        return rtype not in (ResponseType.BUTTON, ResponseType.GRID)
    if rtype is ResponseType.GRID:
        return root_type is ResponseType.CARD
    return True


def supported_in_footer(root: Mapping[str, Any], nested: Mapping[str, Any]) -> bool:
    if response_type_of(nested) is not ResponseType.BUTTON:
        return False
    return not (is_show_panel_button(root) and is_show_panel_button(nested))


def _panel_of(item: Mapping[str, Any]) -> Mapping[str, Any]:
    panel = item.get("panel")
    return panel if isinstance(panel, Mapping) else {}


# -----------------------------------------------------------------------------
# Local item construction
# -----------------------------------------------------------------------------


def output_item_to_local_item(
    item: Mapping[str, Any],
    message: MessageResponse,
    *,
    is_latest_welcome: bool = False,
    disable_fade_animation: bool = False,
) -> MessageItem:
    item_id = stream_item_id(message.id, item) or new_id()
    return MessageItem(
        item=deep_freeze(item),
        full_message_id=message.id,
        ui_state=ItemUIState(
            id=item_id,
            needs_announcement=not message.history.get("from_history"),
            disable_fade_animation=disable_fade_animation,
            is_welcome_response=is_latest_welcome,
        ),
    )


def input_item_to_local_item(
    message: MessageRequest,
    text: str | None = None,
    *,
    local_id: str | None = None,
) -> MessageItem:
    """The single text item that stands for a request in the transcript."""
    item: dict[str, Any] = {
        "response_type": ResponseType.TEXT.value,
        "text": message.display_text if text is None else text,
    }
    agent_message_type = message.input.get("agent_message_type")
    if agent_message_type:
        item["agent_message_type"] = agent_message_type
    return MessageItem(
        item=deep_freeze(item),
        full_message_id=message.id,
        ui_state=ItemUIState(
            id=local_id or new_id(),
            needs_announcement=not message.history.get("from_history"),
        ),
    )


def flatten_item(
    local_item: MessageItem,
    message: Message,
    *,
    allow_footer: bool = True,
) -> list[MessageItem]:
    """Return ``[parent, *descendants]`` with every child id list filled in.

    Descendants appear after their parent in depth-first order. Unsupported
    nested items are logged and dropped.
    """
    out: list[MessageItem] = []
    parent = _attach_children(local_item, message, out, allow_footer)
    return [parent, *out]


def _attach_children(
    local_item: MessageItem,
    message: Message,
    out: list[MessageItem],
    allow_footer: bool,
) -> MessageItem:
    item = local_item.item
    nesting = nesting_of(item)

    if nesting is Nesting.NONE:
        return local_item

    if nesting is Nesting.GRID:
        rows = []
        for row in item.get("rows") or ():
            cells = []
            for cell in row.get("cells") or ():
                cells.append(
                    _children(item, cell.get("items") or (), "cell", message, out, supported_in_body, False)
                )
            rows.append(tuple(cells))
        return local_item.with_ui(grid_ids=tuple(rows))

    if nesting is Nesting.CAROUSEL:
        ids = _children(item, item.get("items") or (), "items", message, out, supported_in_body, allow_footer)
        return local_item.with_ui(items_ids=ids)

    source = _panel_of(item) if nesting is Nesting.PANEL else item
    # A panel's own buttons may not open another panel.
    nested_footer = allow_footer and nesting is not Nesting.PANEL
    changes: dict[str, Any] = {}
    if source.get("body") is not None:
        changes["body_ids"] = _children(
            item, source.get("body") or (), "body", message, out, supported_in_body, nested_footer
        )
    if allow_footer and source.get("footer") is not None:
        changes["footer_ids"] = _children(
            item, source.get("footer") or (), "footer", message, out, supported_in_footer, nested_footer
        )
    return local_item.with_ui(**changes) if changes else local_item


def _children(
    root: Mapping[str, Any],
    items,
    slot: str,
    message: Message,
    out: list[MessageItem],
    is_supported,
    allow_footer: bool,
) -> tuple[str, ...]:
    ids: list[str] = []
    for nested in items:
        if not isinstance(nested, Mapping) or not is_supported(root, nested):
            log.error(
                'The "%s" response type does not support "%s" in its %s; item dropped',
                root.get("response_type"),
                nested.get("response_type") if isinstance(nested, Mapping) else type(nested).__name__,
                slot,
            )
            continue
        child = MessageItem(
            item=deep_freeze(nested),
            full_message_id=message.id,
            ui_state=ItemUIState(
                id=new_id(),
                needs_announcement=not message.history.get("from_history"),
                disable_fade_animation=True,
            ),
        )
        index = len(out)
        out.append(child)
        if nesting_of(nested) is not Nesting.NONE:
            out[index] = _attach_children(child, message, out, allow_footer)
        ids.append(child.id)
    return tuple(ids)


def create_local_message_for_inline_error(
    text: str, *, thread_id: str | None = None, agent_message_type: str | None = None
) -> tuple[MessageItem, MessageResponse]:
    kwargs = {"thread_id": thread_id} if thread_id else {}
    message = create_response_for_text(text, response_type=ResponseType.INLINE_ERROR, **kwargs)
    if agent_message_type:
        message.output["generic"][0]["agent_message_type"] = agent_message_type
    return output_item_to_local_item(message.items[0], message), message
