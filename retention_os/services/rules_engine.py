"""
Segmentation rules.

A segment is the string "{plan}:{value_bucket}:{region}". The same key is
used to attribute offer events and to read offer_performance, so the
function must stay pure and stable.
"""

from dataclasses import dataclass

from retention_os.models.domain.retention_domain import Flow, SubscriptionRecord, UserRecord

UNKNOWN = "unknown"

VALUE_BUCKETS = ("trial", "low", "mid", "high")


@dataclass(frozen=True)
class SegmentParts:
    plan: str
    value_bucket: str
    region: str


def value_bucket(value: float | None) -> str:
    """trial (< 1 or none), low (< 20), mid (< 100), high (>= 100)."""
    if value is None or value < 1:
        return "trial"
    if value < 20:
        return "low"
    if value < 100:
        return "mid"
    return "high"


def _normalize(part: str | None) -> str:
    if part is None:
        return UNKNOWN
    cleaned = part.strip().lower().replace(":", "-")
    return cleaned or UNKNOWN


def segment_key(plan: str | None, value: float | None, region: str | None) -> str:
    return f"{_normalize(plan)}:{value_bucket(value)}:{_normalize(region)}"


def segment_user(user: UserRecord, subscription: SubscriptionRecord | None) -> str:
    value = subscription.value if subscription else None
    return segment_key(user.plan, value, user.region)


def parse_segment(key: str) -> SegmentParts:
    parts = key.split(":")
    if len(parts) != 3:
        return SegmentParts(UNKNOWN, "trial", UNKNOWN)
    plan, bucket, region = parts
    return SegmentParts(plan or UNKNOWN, bucket if bucket in VALUE_BUCKETS else "trial", region or UNKNOWN)


def match_flow_to_segment(segment: str, flows: list[Flow]) -> list[Flow]:
    """
    Keep the active flows whose targeting matches the segment.

    An empty target list matches anything. Input order is preserved.
    """
    parts = parse_segment(segment)
    matched = []
    for flow in flows:
        if not flow.is_active:
            continue
        if flow.target_plans and parts.plan not in flow.target_plans:
            continue
        if flow.target_regions and parts.region not in flow.target_regions:
            continue
        if flow.target_value_buckets and parts.value_bucket not in flow.target_value_buckets:
            continue
        matched.append(flow)
    return matched
