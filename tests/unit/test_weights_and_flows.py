import pytest

from retention_os.errors import InvalidInput, NotFound
from retention_os.models.domain.retention_domain import OfferType
from retention_os.services import message_templates
from retention_os.services.flow_service import parse_flow_definition
from retention_os.services.weight_store import BEHAVIOR_WEIGHT, DEFAULT_WEIGHTS, WeightStore
from tests.fakes import FakeDatabase, FakeWeightRepository


@pytest.fixture
def store():
    return WeightStore(repository=FakeWeightRepository(FakeDatabase()))


@pytest.mark.asyncio
async def test_ensure_defaults_seeds_missing_weights(store):
    await store.ensure_defaults()

    assert await store.get_weights() == {name: value for name, (value, _) in DEFAULT_WEIGHTS.items()}


@pytest.mark.asyncio
async def test_get_weights_falls_back_to_defaults(store):
    assert (await store.get_weights())[BEHAVIOR_WEIGHT] == DEFAULT_WEIGHTS[BEHAVIOR_WEIGHT][0]


@pytest.mark.asyncio
async def test_set_weight_records_audit(store, audit_calls):
    await store.ensure_defaults()

    assert await store.set_weight(BEHAVIOR_WEIGHT, 7.5, actor="owner-1", reason="tuning") == 7.5

    assert (await store.get_weights())[BEHAVIOR_WEIGHT] == 7.5
    assert audit_calls[-1]["action"] == "weight_changed"
    assert audit_calls[-1]["metadata"] == {"old_value": 4.0, "new_value": 7.5, "reason": "tuning"}


@pytest.mark.asyncio
@pytest.mark.parametrize("value", [-0.1, 10.5])
async def test_set_weight_rejects_out_of_range(store, value):
    await store.ensure_defaults()

    with pytest.raises(InvalidInput):
        await store.set_weight(BEHAVIOR_WEIGHT, value, actor="owner-1")


@pytest.mark.asyncio
async def test_set_weight_unknown_name(store):
    with pytest.raises(NotFound):
        await store.set_weight("tenure_weight", 1.0, actor="owner-1")


@pytest.mark.asyncio
async def test_adjust_weight_clamps(store):
    await store.ensure_defaults()

    assert await store.adjust_weight(BEHAVIOR_WEIGHT, 100, actor="model") == 10.0
    assert await store.adjust_weight(BEHAVIOR_WEIGHT, -100, actor="model") == 0.0
    assert await store.adjust_weight("missing", 1, actor="model") is None


# =================================================================
# Flows
# =================================================================


def test_parse_flow_definition_validates_step_config():
    with pytest.raises(InvalidInput) as exc:
        parse_flow_definition(
            {
                "name": "bad",
                "steps": [{"type": "discount", "title": "Stay", "message": "x", "config": {"percent": 150}}],
            }
        )
    assert "steps" in exc.value.message

    with pytest.raises(InvalidInput):
        parse_flow_definition({"name": "bad", "steps": [{"type": "refund", "title": "x", "message": "y"}]})

    with pytest.raises(InvalidInput):
        parse_flow_definition({"name": "empty", "steps": []})


def test_parse_flow_definition_normalizes_targets():
    definition = parse_flow_definition(
        {
            "name": "pro users",
            "steps": [{"type": "pause", "title": "Pause", "message": "Take a break"}],
            "target_plans": [" Pro", "pro", ""],
        }
    )

    assert definition.target_plans == ["pro"]
    assert definition.steps[0].config.max_months == 1


@pytest.mark.asyncio
async def test_create_and_update_flow(engine, audit_calls):
    payload = {
        "name": "winback",
        "ranking_score": 3,
        "steps": [{"type": "downgrade", "title": "Go basic", "message": "Cheaper", "config": {"new_plan": "basic"}}],
    }

    flow = await engine.flow_service.create_flow(payload, actor="owner-1")
    updated = await engine.flow_service.update_flow(flow.id, {**payload, "ranking_score": 0}, actor="owner-1")

    assert (await engine.flow_service.get_flow_by_id(flow.id)) == updated
    assert updated.is_active is False
    assert [c["action"] for c in audit_calls] == ["flow_created", "flow_updated"]


@pytest.mark.asyncio
async def test_flow_not_found(engine):
    with pytest.raises(NotFound):
        await engine.flow_service.get_flow_by_id(404)

    with pytest.raises(NotFound):
        await engine.flow_service.update_flow(
            404,
            {"name": "x", "steps": [{"type": "support", "title": "Help", "message": "Ask us"}]},
            actor="owner-1",
        )


@pytest.mark.asyncio
async def test_list_flows_by_language(engine):
    top = engine.db.add_flow("top", ranking_score=5)
    paused = engine.db.add_flow("paused", ranking_score=0)
    german = engine.db.add_flow("german", ranking_score=2, language="de")

    assert [f.id for f in await engine.flow_service.list_flows()] == [top.id, german.id, paused.id]
    assert [f.id for f in await engine.flow_service.list_flows("de")] == [german.id]


@pytest.mark.asyncio
async def test_deactivate_then_activate_flow(engine, audit_calls):
    flow = engine.db.add_flow(ranking_score=3)

    paused = await engine.flow_service.deactivate_flow(flow.id, actor="owner-1")
    assert paused.ranking_score == 0
    assert await engine.flows.list_active("en") == []

    resumed = await engine.flow_service.activate_flow(flow.id, actor="owner-1")
    assert resumed.ranking_score == 1.0
    assert [f.id for f in await engine.flows.list_active("en")] == [flow.id]

    assert [c["action"] for c in audit_calls] == ["flow_deactivated", "flow_activated"]
    assert audit_calls[0]["metadata"] == {"old_ranking_score": 3, "ranking_score": 0}


@pytest.mark.asyncio
async def test_activate_keeps_score_of_active_flow(engine, audit_calls):
    flow = engine.db.add_flow(ranking_score=4)

    assert (await engine.flow_service.activate_flow(flow.id, actor="owner-1")).ranking_score == 4
    assert audit_calls == []


@pytest.mark.asyncio
async def test_activation_of_unknown_flow(engine):
    with pytest.raises(NotFound):
        await engine.flow_service.activate_flow(404, actor="owner-1")

    with pytest.raises(NotFound):
        await engine.flow_service.deactivate_flow(404, actor="owner-1")

# =================================================================
# Message templates
# =================================================================


def test_every_offer_type_has_a_canonical_template():
    for offer_type in OfferType:
        assert message_templates.canonical_template(offer_type).offer_type == offer_type


def test_render_truncates_and_keeps_unknown_placeholders():
    template = message_templates.TEMPLATES_BY_ID["discount_personal"]

    long_name = message_templates.render(template, {"name": "x" * 500, "percentage": "20"})
    partial = message_templates.render(template, {"percentage": "20"})

    assert len(long_name) == message_templates.MAX_MESSAGE_LENGTH
    assert partial.startswith("{name}")
    assert "20%" in partial
