from datetime import UTC, datetime, timedelta

import pytest

from retention_os.errors import NoFlowAvailable
from retention_os.models.domain.retention_domain import Flow
from retention_os.services.flow_selector import select_flow
from retention_os.services.rules_engine import (
    match_flow_to_segment,
    parse_segment,
    segment_key,
    value_bucket,
)

NOW = datetime(2024, 5, 1, tzinfo=UTC)


def make_flow(flow_id: int, ranking_score: float, updated_at: datetime = NOW, **targets) -> Flow:
    return Flow(
        id=flow_id,
        name=f"flow-{flow_id}",
        ranking_score=ranking_score,
        steps=[{"type": "pause", "title": "Pause", "message": "Take a break"}],
        created_at=NOW,
        updated_at=updated_at,
        **targets,
    )


@pytest.mark.parametrize(
    ("value", "bucket"),
    [(None, "trial"), (0, "trial"), (0.99, "trial"), (1, "low"), (19.99, "low"), (20, "mid"), (99.5, "mid"), (100, "high")],
)
def test_value_bucket_boundaries(value, bucket):
    assert value_bucket(value) == bucket


def test_segment_key_is_normalized():
    assert segment_key(" Pro ", 49, "US") == "pro:mid:us"
    assert segment_key(None, None, "") == "unknown:trial:unknown"
    # A colon inside a part must not break the key format
    assert segment_key("team:annual", 150, "eu") == "team-annual:high:eu"


def test_parse_segment_round_trip_and_garbage():
    parts = parse_segment(segment_key("pro", 5, "us"))
    assert (parts.plan, parts.value_bucket, parts.region) == ("pro", "low", "us")

    garbage = parse_segment("not-a-segment")
    assert (garbage.plan, garbage.value_bucket, garbage.region) == ("unknown", "trial", "unknown")


def test_match_flow_respects_targets():
    any_flow = make_flow(1, 5)
    pro_only = make_flow(2, 5, target_plans=["pro"])
    eu_only = make_flow(3, 5, target_regions=["eu"])
    high_only = make_flow(4, 5, target_value_buckets=["high"])

    matched = match_flow_to_segment("pro:mid:us", [any_flow, pro_only, eu_only, high_only])

    assert [f.id for f in matched] == [1, 2]


def test_match_flow_skips_inactive():
    assert match_flow_to_segment("pro:mid:us", [make_flow(1, 0), make_flow(2, -3)]) == []


def test_select_flow_prefers_highest_score():
    flows = [make_flow(1, 5), make_flow(2, 10)]

    assert select_flow(flows).id == 2


def test_select_flow_never_picks_zero_ranked():
    with pytest.raises(NoFlowAvailable):
        select_flow([make_flow(1, 0), make_flow(2, 0.0)])


def test_select_flow_tie_breaks_on_recency_then_id():
    older = make_flow(1, 7, updated_at=NOW - timedelta(days=1))
    newer = make_flow(2, 7, updated_at=NOW)
    assert select_flow([newer, older]).id == 2

    same_time = [make_flow(3, 7), make_flow(9, 7), make_flow(5, 7)]
    assert select_flow(same_time).id == 9


def test_select_flow_empty_candidates():
    with pytest.raises(NoFlowAvailable):
        select_flow([])
