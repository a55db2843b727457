"""Tests for instruction composition and preprocessing merge."""

from calibration.composer import STRICT_PASS_SUFFIX, compose, merge_preprocessing, strict_instruction
from llm.gateway import PREPROCESSING_DEFAULTS

UNIVERSAL = {"base_prompt": "Read the meter index.", "default_preprocessing": {"contrast": 40}}
GAS = {"meter_type": "gas", "additional_prompt": "Gas meters show m3 on black drums.", "preprocessing_override": {}}
INDEX_ZONE = {
    "id": "z1", "type": "index", "label": "INDEX", "color": "#22c55e",
    "x": 0.1, "y": 0.2, "width": 0.3, "height": 0.1,
}


def _model(**overrides):
    model = {
        "name": "Itron G4",
        "specific_prompt": "Red drums are decimals.",
        "zones": [INDEX_ZONE],
        "format_spec": {"integer_digits": 5, "decimal_digits": 3},
        "preprocessing_override": {},
    }
    model.update(overrides)
    return model


class TestCompose:
    def test_sections_in_order(self):
        text = compose(UNIVERSAL, GAS, _model(), corrections=[("12345", "12845")])
        markers = [
            "Read the meter index.",
            "=== METER TYPE: GAS ===",
            "=== MODEL: Itron G4 ===",
            "=== ZONES ===",
            "=== READING FORMAT ===",
            "=== KNOWN CORRECTIONS ===",
        ]
        positions = [text.index(marker) for marker in markers]
        assert positions == sorted(positions)
        assert "- INDEX: x 10.0%-40.0%, y 20.0%-30.0%" in text
        assert "- integer digits: 5" in text
        assert "- 12345 → 12845" in text

    def test_same_inputs_same_text(self):
        args = (UNIVERSAL, GAS, _model())
        assert compose(*args) == compose(*args)

    def test_blank_model_fragment_is_omitted(self):
        text = compose(UNIVERSAL, GAS, _model(specific_prompt="   ", zones=[], format_spec={}))
        assert "MODEL" not in text
        assert text == "Read the meter index.\n\n=== METER TYPE: GAS ===\nGas meters show m3 on black drums."

    def test_only_usable_zones_are_listed(self):
        stale = {**INDEX_ZONE, "stale": True}
        unpositioned = {"id": "z2", "type": "serial", "label": "SERIAL", "color": "#3b82f6"}
        text = compose(UNIVERSAL, GAS, _model(zones=[stale, unpositioned]))
        assert "ZONES" not in text

    def test_explicit_zones_override_model_zones(self):
        other = {**INDEX_ZONE, "label": "DIAL", "x": 0.5, "width": 0.1}
        text = compose(UNIVERSAL, GAS, _model(), zones=[other])
        assert "- DIAL: x 50.0%-60.0%" in text
        assert "- INDEX:" not in text

    def test_corrections_are_capped(self):
        corrections = [{"wrong": str(n), "right": str(n + 1)} for n in range(10)]
        text = compose(UNIVERSAL, GAS, _model(), corrections=corrections, max_corrections=3)
        block = text.split("=== KNOWN CORRECTIONS ===\n")[1]
        assert block.count("→") == 3
        assert "- 0 → 1" in block
        assert "- 3 → 4" not in block

    def test_empty_layers_give_empty_instruction(self):
        assert compose(None, None, None) == ""


class TestStrictInstruction:
    def test_appends_verification_suffix(self):
        text = strict_instruction("Read the meter.")
        assert text.startswith("Read the meter.\n\n")
        assert text.endswith(STRICT_PASS_SUFFIX)

    def test_empty_instruction(self):
        assert strict_instruction("") == STRICT_PASS_SUFFIX


class TestMergePreprocessing:
    def test_model_overrides_type_overrides_universal(self):
        merged = merge_preprocessing(
            {"default_preprocessing": {"contrast": 40, "sharpness": 10}},
            {"preprocessing_override": {"contrast": 50, "grayscale": True}},
            {"preprocessing_override": {"contrast": 60, "brightness": None}},
        )
        assert merged["contrast"] == 60
        assert merged["sharpness"] == 10
        assert merged["grayscale"] is True
        assert merged["brightness"] == PREPROCESSING_DEFAULTS["brightness"]

    def test_defaults_when_no_layers(self):
        assert merge_preprocessing(None, None, None) == PREPROCESSING_DEFAULTS
