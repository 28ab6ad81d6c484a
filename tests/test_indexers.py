import numpy as np
import pytest

from graphmf.data.indexers import EntityIdSpace, VertexIdTranslate
from graphmf.errors import InvariantViolationError


def test_entity_id_space_offsets_items_after_users():
    space = EntityIdSpace(num_users=3, num_items=2)

    assert space.num_entities == 5
    assert space.num_rows == 6
    assert space.user_entity(2) == 2
    assert space.item_entity(0) == 3
    assert space.item_entity(1) == 4
    assert space.is_user(2) and not space.is_user(3)
    assert space.is_item(4) and not space.is_item(5)


@pytest.mark.parametrize("call", ["user_entity", "item_entity"])
def test_entity_id_space_rejects_out_of_range(call):
    space = EntityIdSpace(num_users=3, num_items=2)

    with pytest.raises(InvariantViolationError):
        getattr(space, call)(3)
    with pytest.raises(InvariantViolationError):
        getattr(space, call)(-1)


def test_entity_id_space_side_checks():
    space = EntityIdSpace(num_users=2, num_items=2)

    assert space.check_user(1) == 1
    assert space.check_item(2) == 2
    with pytest.raises(InvariantViolationError):
        space.check_user(2)
    with pytest.raises(InvariantViolationError):
        space.check_item(1)


def test_vertex_id_translate_round_trips():
    translate = VertexIdTranslate.shuffled(10, seed=3)

    for entity in range(10):
        assert translate.backward(translate.forward(entity)) == entity
    assert sorted(translate.forward(e) for e in range(10)) == list(range(10))


def test_vertex_id_translate_identity_and_errors():
    translate = VertexIdTranslate.identity(4)

    assert [translate.forward(e) for e in range(4)] == [0, 1, 2, 3]
    assert len(translate) == 4
    with pytest.raises(InvariantViolationError):
        translate.backward(4)
    with pytest.raises(InvariantViolationError):
        translate.forward(-1)


def test_vertex_id_translate_rejects_non_permutation():
    with pytest.raises(ValueError):
        VertexIdTranslate(np.array([0, 0, 1]))
