"""
Instruction assembly tests

Fragment order per mode and safety-block selection per patient.
"""

from vet_agent.instructions import InstructionBuilder, normalize_species, select_safety_blocks
from vet_agent.types import AgentMode, PatientContext


def _names(mode=AgentMode.CHAT, context=None):
    return [name for name, _ in InstructionBuilder().fragments(mode, context)]


def _ctx(**patient):
    return PatientContext.from_dict({"patient": patient})


class TestSafetyBlocks:
    def test_unknown_species_gets_every_block(self):
        assert select_safety_blocks(None) == ["feline_drugs", "mdr1", "ckd"]
        assert select_safety_blocks(_ctx(name="Rex")) == ["feline_drugs", "mdr1", "ckd"]

    def test_cat_gets_feline_block_only(self):
        assert select_safety_blocks(_ctx(species="貓")) == ["feline_drugs"]

    def test_dog_with_ckd(self):
        ctx = _ctx(species="Canine", chronic_conditions=["Chronic Kidney Disease stage 2"])
        assert select_safety_blocks(ctx) == ["mdr1", "ckd"]

    def test_other_species(self):
        assert normalize_species("Rabbit") == "rabbit"
        assert select_safety_blocks(_ctx(species="rabbit")) == []


class TestInstructionBuilder:
    def test_chat_order(self):
        assert _names() == ["core", "tool_usage", "feline_drugs", "mdr1", "ckd", "disclaimer"]

    def test_deep_research_adds_report_structure(self):
        names = _names(AgentMode.DEEP_RESEARCH, _ctx(species="cat"))
        assert names == ["core", "tool_usage", "deep_research", "feline_drugs", "patient_context", "disclaimer"]

    def test_fast_modes_drop_tool_rules(self):
        names = _names(AgentMode.SOAP_STRUCTURE, _ctx(species="dog"))
        assert names == ["core", "mdr1", "patient_context", "mode_task", "disclaimer"]
        assert "SOAP" in InstructionBuilder().build(AgentMode.SOAP_STRUCTURE, _ctx(species="dog"))

    def test_image_analysis_keeps_tool_rules_and_adds_task(self):
        names = _names(AgentMode.IMAGE_ANALYSIS, _ctx(species="cat"))
        assert names == ["core", "tool_usage", "feline_drugs", "patient_context", "mode_task", "disclaimer"]
        text = InstructionBuilder().build(AgentMode.IMAGE_ANALYSIS)
        assert "TASK: IMAGE ANALYSIS" in text
        assert "not a medical image" in text

    def test_mdr1_breed_flagged(self):
        text = InstructionBuilder().build(AgentMode.CHAT, _ctx(species="dog", breed="Border Collie"))
        assert "THIS PATIENT (Border Collie) belongs to an at-risk breed" in text

    def test_patient_context_rendering(self):
        ctx = PatientContext.from_dict({
            "patient": {"name": "Mimi", "species": "cat", "weight_kg": 4.2, "is_neutered": True, "allergies": ["penicillin"]},
            "prescriptions": [{"drug": "methimazole", "dose": "2.5 mg BID"}],
        })
        text = InstructionBuilder().build(AgentMode.CONSULTATION, ctx)
        assert "- Weight: 4.2 kg" in text
        assert "- Neutered: yes" in text
        assert "- Allergies: penicillin" in text
        assert 'Prescriptions: [{"dose": "2.5 mg BID", "drug": "methimazole"}]' in text

    def test_build_is_deterministic(self):
        ctx = _ctx(species="dog", breed="Collie")
        b = InstructionBuilder()
        assert b.build(AgentMode.CHAT, ctx) == b.build(AgentMode.CHAT, ctx)
