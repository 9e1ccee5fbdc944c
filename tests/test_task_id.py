import pytest

from core.task_id import (
    SUBTASK_SHORTHAND_LIMIT,
    Sub,
    TopLevel,
    parse_task_id,
    task_id_key,
    try_parse_task_id,
)


def test_parse_plain_forms():
    assert parse_task_id(7) == TopLevel(7)
    assert parse_task_id("7") == TopLevel(7)
    assert parse_task_id(" 7 ") == TopLevel(7)
    assert parse_task_id("7.2") == Sub(7, 2)
    assert parse_task_id(7.0) == TopLevel(7)
    assert parse_task_id(Sub(3, 1)) == Sub(3, 1)


def test_sibling_shorthand_only_for_small_ints():
    assert parse_task_id(2, sibling_of=5) == Sub(5, 2)
    # numeric strings always mean top-level tasks
    assert parse_task_id("2", sibling_of=5) == TopLevel(2)
    assert parse_task_id(SUBTASK_SHORTHAND_LIMIT, sibling_of=5) == TopLevel(SUBTASK_SHORTHAND_LIMIT)
    assert parse_task_id("4.1", sibling_of=5) == Sub(4, 1)


@pytest.mark.parametrize("raw", ["abc", "", 0, -3, "1.2.3", "1.", ".2", True, 1.5, None, [1]])
def test_invalid_ids_raise(raw):
    with pytest.raises(ValueError):
        parse_task_id(raw)
    assert try_parse_task_id(raw) is None


def test_canonical_strings_and_json():
    assert str(TopLevel(12)) == "12"
    assert str(Sub(12, 3)) == "12.3"
    assert TopLevel(12).to_json() == 12
    assert Sub(12, 3).to_json() == "12.3"
    assert Sub(12, 3).parent == 12
    assert TopLevel(12).parent is None


def test_sort_key_keeps_subtasks_after_parent():
    ids = [Sub(2, 1), TopLevel(10), TopLevel(2), Sub(1, 2), TopLevel(1)]
    ordered = sorted(ids, key=task_id_key)
    assert [str(i) for i in ordered] == ["1", "1.2", "2", "2.1", "10"]
