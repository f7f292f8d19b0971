import pytest

from src.course_copilot.domain.models.course_outline import CourseOutline
from src.course_copilot.errors import InvalidInputError, NotFoundError
from src.course_copilot.services.drafts.service import candidate_keys, parse_position


def _outline() -> CourseOutline:
    return CourseOutline(
        title="PHP for Beginners",
        sections=[
            {"title": "Basics", "lessons": [{"title": "Syntax"}, {"title": "Variables"}]},
            {"title": "Functions", "lessons": [{"title": "Defining"}, {"title": "Calling"}]},
            {"title": "Project", "lessons": [{"title": "Todo app", "content": "original"}]},
        ],
    )


def test_candidate_keys_lookup_order():
    keys = candidate_keys(0, 1)
    assert [(s, l) for _, s, l in keys] == [("0", "1"), ("section_1", "lesson_1_2")]


def test_explicit_ids_are_tried_last():
    outline = CourseOutline(title="T", sections=[{"id": 7, "title": "S", "lessons": [{"id": 70, "title": "L"}]}])
    section = outline.sections[0]
    keys = candidate_keys(0, 0, section, section.lessons[0])
    assert keys[-1] == ("explicit", "7", "70")


def test_parse_position_understands_both_schemes():
    assert parse_position("2", "0") == ("positional", (2, 0))
    assert parse_position("section_3", "lesson_3_1") == ("legacy", (2, 0))
    assert parse_position("section_3", "lesson_2_1") is None
    assert parse_position("intro", "a") is None


def test_drafts_under_either_scheme_land_on_the_same_lessons(drafts):
    drafts.save_draft("cs_map", "0", "1", "Positional body")
    drafts.save_draft("cs_map", "section_1", "lesson_1_2", "Legacy body")
    drafts.save_draft("cs_map", "section_2", "lesson_2_1", "Only legacy")

    mapped, report = drafts.map_drafts_to_structure("cs_map", _outline())

    # Positional wins when both schemes address the same lesson.
    assert mapped.sections[0].lessons[1].content == "Positional body"
    assert mapped.sections[1].lessons[0].content == "Only legacy"
    assert mapped.sections[2].lessons[0].content == "original"
    assert mapped.sections[0].lessons[0].content is None
    assert len(report.matched) == 2
    assert {(m["section_index"], m["lesson_index"]) for m in report.missed} == {(0, 0), (1, 1), (2, 0)}


def test_mapping_is_idempotent_and_leaves_input_alone(drafts):
    drafts.save_draft("cs_idem", "0", "0", "Syntax body")
    outline = _outline()

    once, _ = drafts.map_drafts_to_structure("cs_idem", outline)
    twice, _ = drafts.map_drafts_to_structure("cs_idem", once)

    assert once == twice
    assert outline.sections[0].lessons[0].content is None


def test_save_draft_validates_addresses(drafts):
    with pytest.raises(InvalidInputError):
        drafts.save_draft("cs_v", "", "0", "x")
    with pytest.raises(InvalidInputError):
        drafts.save_draft("cs_v", "0", "  ", "x")


def test_update_order_and_grouping(drafts):
    for lesson_id in ("a", "b", "c"):
        drafts.save_draft("cs_ord", "s1", lesson_id, lesson_id.upper())

    assert drafts.update_order("cs_ord", "s1", ["c", "a", "b", "missing"]) == 3
    ordered = [d.lesson_id for d in drafts.get_session_drafts("cs_ord")]
    assert ordered == ["c", "a", "b"]
    assert set(drafts.group_session_drafts("cs_ord")["s1"]) == {"a", "b", "c"}


def _session_with_outline(sessions, ctx):
    session = sessions.create_session(ctx)
    session.set_outline(_outline())
    return sessions.save_session(session)


def test_removing_a_lesson_shifts_later_drafts(sessions, drafts, ctx):
    session = _session_with_outline(sessions, ctx)
    sid = session.session_id
    drafts.save_draft(sid, "1", "0", "Defining body")
    drafts.save_draft(sid, "section_2", "lesson_2_2", "Calling body")

    updated = drafts.remove_lesson(ctx, sid, 1, 0)

    assert [l.title for l in updated.outline.sections[1].lessons] == ["Calling"]
    assert drafts.get_draft(sid, "1", "0") is None
    assert drafts.get_draft(sid, "section_2", "lesson_2_1").content == "Calling body"
    mapped, _ = drafts.map_drafts_to_structure(sid, updated.outline)
    assert mapped.sections[1].lessons[0].content == "Calling body"


def test_removing_a_section_shifts_later_sections(sessions, drafts, ctx):
    session = _session_with_outline(sessions, ctx)
    sid = session.session_id
    drafts.save_draft(sid, "0", "0", "Syntax body")
    drafts.save_draft(sid, "2", "0", "Project body")

    updated = drafts.remove_section(ctx, sid, 0)

    assert [s.title for s in updated.outline.sections] == ["Functions", "Project"]
    mapped, _ = drafts.map_drafts_to_structure(sid, updated.outline)
    assert mapped.sections[1].lessons[0].content == "Project body"
    assert all(d.content != "Syntax body" for d in drafts.get_session_drafts(sid))


def test_reordering_sections_moves_drafts_along(sessions, drafts, ctx):
    session = _session_with_outline(sessions, ctx)
    sid = session.session_id
    drafts.save_draft(sid, "0", "1", "Variables body")

    updated = drafts.reorder_sections(ctx, sid, [2, 0, 1])

    assert [s.title for s in updated.outline.sections] == ["Project", "Basics", "Functions"]
    assert drafts.get_draft(sid, "1", "1").content == "Variables body"
    with pytest.raises(InvalidInputError):
        drafts.reorder_sections(ctx, sid, [0, 0, 1])


def test_outline_edits_need_an_outline(sessions, drafts, ctx):
    session = sessions.create_session(ctx)
    with pytest.raises(NotFoundError):
        drafts.remove_section(ctx, session.session_id, 0)
