from __future__ import annotations

import pytest

from boardsync.boards.journal import JournalSyncEngine, latest_in_category, merge_tags, normalize_stickies
from boardsync.errors import MissingRequiredField, UnsupportedCategory
from boardsync.mural.client import MuralAuth

from fake_mural import FakeMural


def _engine(mural: FakeMural) -> JournalSyncEngine:
  return JournalSyncEngine(MuralAuth(token="at-1", transport=mural.transport()), tag_color="Blueberry")


def _board_with_category_tag(mural: FakeMural, name: str = "perceptions") -> str:
  mural.add_board("mural-1")
  mural.tags["mural-1"].append({"id": "tag-p", "text": name})
  return "mural-1"


def _widget(mural: FakeMural, widget_id: str) -> dict:
  return next(w for w in mural.widgets["mural-1"] if w["id"] == widget_id)


@pytest.mark.anyio
async def test_empty_latest_note_is_reclaimed(mural: FakeMural) -> None:
  board = _board_with_category_tag(mural)
  mural.add_sticky(board, text="<p>seen it</p>", tags=["tag-p"], x=10, y=50, height=100)
  empty = mural.add_sticky(board, text="", tags=["tag-p"], x=10, y=182, height=100)

  out = await _engine(mural).sync(board, "Perceptions", "  Noticed a pattern  ")

  assert out.action == "updated-empty"
  assert out.widget_id == empty["id"]
  assert out.tags_applied is True
  w = _widget(mural, empty["id"])
  assert w["text"] == "Noticed a pattern"
  assert w["tags"] == ["tag-p"]
  assert len(mural.widgets[board]) == 2


@pytest.mark.anyio
async def test_new_note_is_placed_below_latest_in_category(mural: FakeMural) -> None:
  board = _board_with_category_tag(mural)
  mural.add_sticky(board, text="first", tags=["tag-p"], x=50, y=100, width=300, height=120)
  mural.add_sticky(board, text="older but higher", tags=["tag-p"], x=50, y=20, width=300, height=60)
  mural.add_sticky(board, text="other category", tags=[], x=900, y=900)

  out = await _engine(mural).sync(board, "perceptions", "Second thought")

  assert out.action == "created-new"
  w = _widget(mural, out.widget_id)
  assert (w["x"], w["y"], w["width"], w["height"]) == (50, 100 + 120 + 32, 300, 120)
  assert w["text"] == "Second thought"
  assert w["tags"] == ["tag-p"]


@pytest.mark.anyio
async def test_first_note_in_category_uses_anchor_and_creates_tags(mural: FakeMural) -> None:
  mural.add_board("mural-1")

  out = await _engine(mural).sync("mural-1", "decisions", "Chose option B", tags=["Decisions", "Team"])

  w = _widget(mural, out.widget_id)
  assert (w["x"], w["y"], w["width"], w["height"]) == (200, 200, 240, 120)
  assert [t["text"] for t in mural.tags["mural-1"]] == ["decisions", "Team"]
  assert all(t["color"] == "Blueberry" for t in mural.tags["mural-1"])
  assert w["tags"] == [t["id"] for t in mural.tags["mural-1"]]


@pytest.mark.anyio
async def test_title_marks_category_without_tags(mural: FakeMural) -> None:
  mural.add_board("mural-1")
  titled = mural.add_sticky("mural-1", text="", title="Procedures", x=0, y=0)

  out = await _engine(mural).sync("mural-1", "procedures", "Step one")
  assert out.action == "updated-empty"
  assert out.widget_id == titled["id"]


@pytest.mark.anyio
async def test_unknown_category_rejected_before_any_call(mural: FakeMural) -> None:
  mural.add_board("mural-1")
  with pytest.raises(UnsupportedCategory):
    await _engine(mural).sync("mural-1", "musings", "text")
  assert mural.calls == []


@pytest.mark.anyio
async def test_blank_text_or_category_is_missing_field(mural: FakeMural) -> None:
  mural.add_board("mural-1")
  with pytest.raises(MissingRequiredField) as ei:
    await _engine(mural).sync("mural-1", "decisions", "   ")
  assert ei.value.details["field"] == "text"
  with pytest.raises(MissingRequiredField) as ei:
    await _engine(mural).sync("mural-1", "", "text")
  assert ei.value.details["field"] == "category"
  assert mural.calls == []


def test_latest_falls_back_to_creation_order_without_positions() -> None:
  notes = normalize_stickies(
    [
      {"id": "a", "type": "sticky note", "text": "a", "tags": ["introspections"], "createdOn": 5},
      {"id": "b", "type": "sticky note", "text": "b", "tags": [{"id": "t1", "text": "Introspections"}], "createdOn": 9},
      {"id": "c", "type": "shape", "text": "c", "tags": ["introspections"], "createdOn": 99},
    ]
  )
  assert [n.id for n in notes] == ["a", "b"]
  assert latest_in_category(notes, "introspections").id == "b"
  assert latest_in_category(notes, "decisions") is None


def test_merge_tags_dedupes_case_insensitively_with_category_first() -> None:
  assert merge_tags("decisions", ["Decisions", " team ", "", "TEAM", None]) == ["decisions", "team"]
