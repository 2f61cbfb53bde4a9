import json

from closer_coach.call_context import get_context_policy
from closer_coach.prompts import (
    DEFAULT_BANNED_PHRASES, build_objection_prompt, build_reference_section,
    build_response_template, build_system_prompt, build_user_prompt,
    format_timestamp, format_transcript
)
from closer_coach.schemas import OBJECTION_CATEGORIES, CallContext, ReferenceScript, TranscriptSegment


def sample_script():
    return ReferenceScript.model_validate({
        "course_details": {
            "name": "GCSE Maths Intensive",
            "teacher": {"name": "Dr Patel", "credentials": ["PhD Mathematics", "15 years teaching"]},
        },
        "pricing": {
            "monthly": {"price": 79, "billing": "per month"},
            "annual_plan": {"price": 699},
        },
        "closer_phases": {
            "opening": {"exact_script": ["Hi, it's Tom from MyEdSpace.", "Is now still a good time?"]},
            "reinforce_close": {"exact_script": "Shall we get you started today?"},
        },
        "banned_phrases": ["to be honest"],
    })


class TestTranscriptFormatting:
    def test_format_timestamp(self):
        assert format_timestamp(0) == "00:00"
        assert format_timestamp(65.9) == "01:05"
        assert format_timestamp(3725) == "62:05"

    def test_format_transcript(self):
        segments = [
            TranscriptSegment(speaker="rep", text="Hello", start_time=5, end_time=7),
            TranscriptSegment(speaker="prospect", text="Hi", start_time=7, end_time=8),
        ]

        assert format_transcript(segments) == "[00:05] REP: Hello\n[00:07] PROSPECT: Hi"
        assert format_transcript(segments, timestamps=False) == "REP: Hello\nPROSPECT: Hi"


class TestReferenceSection:
    def test_script_content_is_rendered(self):
        section = build_reference_section(sample_script())

        assert "Dr Patel" in section
        assert "PhD Mathematics, 15 years teaching" in section
        assert "- Monthly: £79 (per month)" in section
        assert "- Annual Plan: £699" in section
        assert "Is now still a good time?" in section
        # reinforce falls back to the reinforce_close key
        assert "Shall we get you started today?" in section

    def test_missing_script(self):
        section = build_reference_section(None)

        assert "Not specified in script" in section
        assert "Not specified" in section


class TestScoringPrompts:
    def test_new_lead_prompt_covers_all_phases(self):
        prompt = build_system_prompt(get_context_policy(CallContext.NEW_LEAD))

        assert "First ever interaction" in prompt
        assert "NOT scored" not in prompt
        for phrase in DEFAULT_BANNED_PHRASES:
            assert phrase in prompt

    def test_script_banned_phrases_replace_defaults(self):
        prompt = build_system_prompt(get_context_policy(CallContext.NEW_LEAD), sample_script())

        assert "to be honest" in prompt

    def test_warm_lead_prompt_uses_adapted_rubric(self):
        policy = get_context_policy(CallContext.WARM_LEAD)

        prompt = build_system_prompt(policy)

        assert "NOT scored" in prompt
        assert "[WARM LEAD]" in prompt

    def test_response_template_lists_retained_phases_only(self):
        policy = get_context_policy(CallContext.FOLLOW_UP)

        template = json.loads(build_response_template(policy))

        assert [s["phase"] for s in template["scores"]] == policy.retained_phases

    def test_user_prompt_embeds_transcript(self):
        policy = get_context_policy(CallContext.NEW_LEAD)
        segments = [TranscriptSegment(speaker="rep", text="Hello there", start_time=5, end_time=6)]

        prompt = build_user_prompt(segments, policy)

        assert "[00:05] REP: Hello there" in prompt
        assert "opening, clarify, label" in prompt

    def test_objection_prompt(self):
        segments = [TranscriptSegment(speaker="prospect", text="It's too expensive")]

        prompt = build_objection_prompt(segments)

        assert "PROSPECT: It's too expensive" in prompt
        assert '"objections"' in prompt

    def test_tonality_banned_phrases_take_priority(self):
        script = ReferenceScript.model_validate({
            "conviction_tonality": {"banned_phrases": ["no worries"], "tone": "calm"},
            "banned_phrases": ["to be honest"],
        })

        prompt = build_system_prompt(get_context_policy(CallContext.NEW_LEAD), script)

        assert "no worries" in prompt
        assert "to be honest" not in prompt

    def test_objection_categories_listed(self):
        choices = "|".join(OBJECTION_CATEGORIES)
        prompt = build_objection_prompt([TranscriptSegment(speaker="prospect", text="Hmm")])
        template = json.loads(build_response_template(get_context_policy(CallContext.NEW_LEAD)))

        assert f"\"category\": \"{choices}\"" in prompt
        assert template["objections_detected"][0]["category"] == choices
