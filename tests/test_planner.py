import itertools

import pytest

from attestation_harvester.core import planner
from attestation_harvester.core.errors import ConfigError

DAY = 86400
START = 1701950400


def test_generate_yields_step_aligned_batches() -> None:
    batches = list(planner.generate(0, 100, 10, 4))
    assert batches == [[0, 10, 20, 30], [40, 50, 60, 70], [80, 90, 100]]


def test_generate_includes_end_when_aligned() -> None:
    batches = list(planner.generate(START, START + 2 * DAY, DAY, 5))
    assert batches == [[START, START + DAY, START + 2 * DAY]]


def test_generate_excludes_unaligned_end() -> None:
    batches = list(planner.generate(0, 25, 10, 10))
    assert batches == [[0, 10, 20]]


def test_generate_single_timestamp_window() -> None:
    assert list(planner.generate(START, START, DAY, 5)) == [[START]]


def test_generate_covers_window_without_gaps_or_duplicates() -> None:
    flat = [ts for batch in planner.generate(START, START + 30 * DAY, DAY, 7) for ts in batch]
    assert flat == list(range(START, START + 31 * DAY, DAY))
    assert len(set(flat)) == len(flat)


def test_generate_is_lazy() -> None:
    batches = planner.generate(0, 10**15, 1, 3)
    assert list(itertools.islice(batches, 2)) == [[0, 1, 2], [3, 4, 5]]


@pytest.mark.parametrize(
    "start,end,step,batch_size",
    [(0, 10, 0, 5), (0, 10, -1, 5), (10, 0, 1, 5), (0, 10, 1, 0)],
)
def test_generate_rejects_invalid_configuration(start, end, step, batch_size) -> None:
    with pytest.raises(ConfigError):
        planner.generate(start, end, step, batch_size)


def test_resume_point_without_cache_is_start() -> None:
    assert planner.resume_point([], START, DAY) == START


def test_resume_point_is_one_step_past_greatest_cached() -> None:
    cached = [START, START + DAY, START + 2 * DAY]
    assert planner.resume_point(cached, START, DAY) == START + 3 * DAY


def test_resume_point_never_precedes_start() -> None:
    assert planner.resume_point([START - 10 * DAY], START, DAY) == START


def test_missing_timestamps_skips_cached() -> None:
    cached = {START + DAY, START + 3 * DAY}
    batches = list(planner.missing_timestamps(START, START + 4 * DAY, DAY, cached, 2))
    assert batches == [[START, START + 2 * DAY], [START + 4 * DAY]]


def test_missing_timestamps_nothing_left() -> None:
    cached = {START, START + DAY}
    assert list(planner.missing_timestamps(START, START + DAY, DAY, cached, 5)) == []
