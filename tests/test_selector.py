import numpy as np
import pytest

from asqp.blocks.selector import IndexSelector
from asqp.errors import OutOfBoundsError


def test_partition_covers_all_indices():
    sel = IndexSelector(6)
    sel.include(4)
    sel.include(1)
    inc, exc = sel.included(), sel.excluded()
    assert inc.tolist() == [1, 4]
    assert exc.tolist() == [0, 2, 3, 5]
    assert set(inc) | set(exc) == set(range(6))
    assert not set(inc) & set(exc)
    assert sel.count_included() == 2
    assert sel.count_excluded() == 4


def test_last_touched_only_moves_on_transition():
    sel = IndexSelector(4)
    assert sel.last_included == -1 and sel.last_excluded == -1

    sel.include(2)
    sel.include(0)
    assert sel.last_included == 0
    sel.include(2)  # already included
    assert sel.last_included == 0

    sel.exclude(3)  # already excluded
    assert sel.last_excluded == -1
    sel.exclude(2)
    assert sel.last_excluded == 2
    assert sel.is_included(0) and not sel.is_included(2)


def test_bulk_operations():
    sel = IndexSelector(3)
    sel.include_all()
    assert sel.included().tolist() == [0, 1, 2]
    assert sel.key() == (0, 1, 2)
    sel.exclude(1)
    sel.exclude_all()
    assert sel.count_included() == 0
    assert sel.last_included == -1 and sel.last_excluded == -1
    sel.include_many(np.array([2, 0]))
    assert sel.key() == (0, 2)
    assert "included=[0, 2]" in repr(sel)


def test_empty_selector():
    sel = IndexSelector(0)
    assert sel.included().size == 0
    assert sel.excluded().size == 0
    assert sel.key() == ()


@pytest.mark.parametrize("index", [-1, 3, 10])
def test_out_of_range(index):
    sel = IndexSelector(3)
    with pytest.raises(OutOfBoundsError):
        sel.include(index)
    with pytest.raises(OutOfBoundsError):
        sel.exclude(index)
