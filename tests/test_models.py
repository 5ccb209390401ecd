"""Tests for data models and flow validation."""
from models.schemas import (
    APPLIED_EVENTS_KEPT, ActivationRules, Contact, Conversation, FlowContent, FlowStep, LeadSource,
    PaymentConfig, SourceRules, StepActions, StepOption, WhatsAppStatusRules,
)
from models.validation import validate_flow_content


class TestActivationRules:
    def test_defaults_accept_unknown_numbers_from_any_source(self):
        rules = ActivationRules()
        assert rules.matches(LeadSource.META_ADS, is_known_contact=False)
        assert rules.matches(LeadSource.ORGANIC, is_known_contact=False)
        assert not rules.matches(LeadSource.ORGANIC, is_known_contact=True)

    def test_both_dimensions_must_match(self):
        rules = ActivationRules(
            sources=SourceRules(meta_ads=True, organic=False),
            whatsapp_status=WhatsAppStatusRules(agendado=True, no_agendado=False),
        )
        assert rules.matches(LeadSource.META_ADS, is_known_contact=True)
        assert not rules.matches(LeadSource.ORGANIC, is_known_contact=True)
        assert not rules.matches(LeadSource.META_ADS, is_known_contact=False)


class TestStepActions:
    def test_is_empty(self):
        assert StepActions().is_empty
        assert not StepActions(add_tags=["x"]).is_empty
        assert not StepActions(pause_conversation=True).is_empty


class TestContact:
    def test_name_from_meta(self):
        assert Contact(phone="1", meta={"name": "Ana"}).name == "Ana"
        assert Contact(phone="1", meta={"nombre": "Bruno"}).name == "Bruno"
        assert Contact(phone="1").name == ""


class TestConversation:
    def test_defaults(self):
        conv = Conversation(phone="1", flow_id="f", flow_version=1, current_step_id="inicio")
        assert conv.is_active
        assert not conv.is_paused
        assert conv.revision == 0
        assert conv.loop_detection.messages_in_current_step == 0

    def test_applied_event_ids_bounded(self):
        conv = Conversation(phone="1", flow_id="f", flow_version=1, current_step_id="s",
                            applied_event_ids=[f"e{i}" for i in range(APPLIED_EVENTS_KEPT)])
        ids = conv.applied_with("new")
        assert len(ids) == APPLIED_EVENTS_KEPT
        assert ids[0] == "e1" and ids[-1] == "new"
        assert conv.applied_with("e5") == conv.applied_event_ids
        assert conv.applied_with("") == conv.applied_event_ids
        assert conv.has_applied("e0")
        assert not conv.has_applied("")

    def test_model_dump_roundtrip(self):
        conv = Conversation(phone="1", flow_id="f", flow_version=2, current_step_id="s",
                            tags=["a"], data={"selected_day": {"letter": "A"}})
        restored = Conversation.model_validate(conv.model_dump(mode="json"))
        assert restored.model_dump() == conv.model_dump()


class TestPaymentConfig:
    def test_render(self):
        cfg = PaymentConfig(enabled=True, link="https://pay/x")
        assert cfg.render().endswith("\nhttps://pay/x")


class TestValidateFlowContent:
    def test_valid_flow(self, dental_content):
        assert validate_flow_content(dental_content) == []

    def test_no_steps(self):
        assert validate_flow_content(FlowContent(entry_step_id="x")) == ["flow has no steps"]

    def test_missing_entry(self, dental_content):
        content = dental_content.model_copy(update={"entry_step_id": "nope"})
        assert validate_flow_content(content) == ["entry_step_id 'nope' not in steps"]

    def test_dangling_option(self):
        content = FlowContent(entry_step_id="s", steps={
            "s": FlowStep(id="s", options=[StepOption(key="A", next_step_id="ghost")]),
        })
        [error] = validate_flow_content(content)
        assert "points to missing step 'ghost'" in error

    def test_repeated_and_empty_keys(self):
        content = FlowContent(entry_step_id="s", steps={
            "s": FlowStep(id="s", options=[
                StepOption(key="A", next_step_id="s"),
                StepOption(key="a", next_step_id="s"),
                StepOption(key=" ", next_step_id="s"),
            ]),
        })
        errors = validate_flow_content(content)
        assert any("repeats option key" in e for e in errors)
        assert any("empty key" in e for e in errors)

    def test_mismatched_step_id(self):
        content = FlowContent(entry_step_id="s", steps={"s": FlowStep(id="t")})
        assert validate_flow_content(content) == ["step 's' declares mismatched id 't'"]
