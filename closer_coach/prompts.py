"""Prompt text for CLOSER call scoring and objection extraction.

The system prompt carries the reference script (so suggestions use approved
wording), the rubric for every phase the call context keeps, and the banned
phrase list. The user prompt carries the transcript and a JSON template that
lists only the retained phases.
"""
import json
from typing import List, Optional

from .schemas import TranscriptSegment, ReferenceScript, PHASE_NAMES, OBJECTION_CATEGORIES
from .call_context import ContextPolicy


CATEGORY_CHOICES = "|".join(OBJECTION_CATEGORIES)

DEFAULT_BANNED_PHRASES = [
    "Personalised learning",
    "Maths can be fun!",
    "World-class",
    "Unlock potential",
    "Learning journey",
    "Empower",
    "SUPER excited!",
    "AMAZING!",
    "How are you today?",
]

SCORING_SYSTEM_MESSAGE = "You are a STRICT sales coach scoring calls against the CLOSER framework."

OBJECTION_SYSTEM_MESSAGE = (
    "You are a sales coach analyzing call transcripts for objection handling patterns. "
    "Return only valid JSON."
)


PHASE_RUBRICS = {
    "opening": """### Opening (Proof-Promise-Plan)
**Required Elements:**
- Greet and confirm speaking with the correct person
- Recording disclosure and consent
- Brief proof/credibility (number of students helped)
- Promise an outcome (understand the situation, show how to help, see if it's a good fit)
- Plan for the call (~10 minutes)
- Micro-commitment ("How does that sound?")

**Red Flags:**
- "How are you today?" opener = Score 1 (CRITICAL)
- Launching into a product pitch immediately = Score 1-2
- No agenda setting = Score 2-3
- Long company introduction = Score 2-3
- Forgetting the recording disclosure = Score 3-4

**Scoring:**
- 5 (100%): All required elements, recording disclosed, under 60 sec, gets micro-commitment
- 4 (80%): Most elements but one missing (no micro-commitment or no recording disclosure)
- 3 (60%): Has an agenda but is missing proof or promise
- 2 (40%): Long company intro, no clear agenda
- 1 (20%): "How are you today?" opener, launches into pitch, no agenda""",

    "clarify": """### Clarify (C) + Kill Zombies
**Required Elements:**
- Get the child's name
- Check for siblings (discount opportunity)
- Confirm year group
- Identify subjects of interest
- Kill zombies: check whether a spouse/partner needs to be involved
- Handle child buy-in if mentioned

**Red Flags:**
- Assuming year group or subjects without asking
- Only yes/no questions
- Forgetting to check for siblings
- Not addressing the decision-maker question
- Rep talks more than the prospect

**Scoring:**
- 5 (100%): Name, year group, subjects, sibling check, zombies killed, open-ended questions
- 4 (80%): Good discovery but one element missed
- 3 (60%): Some discovery but relies on closed yes/no questions
- 2 (40%): Minimal discovery, moves quickly to the pitch
- 1 (20%): Assumes details without asking, talks more than listens""",

    "label": """### Label (L) + Discovery
**Required Elements:**
- Ask what made them reach out (open-ended)
- Empathy check: repeat, acknowledge, associate ("We hear this a lot from parents")
- Ask about their vision of success
- Uncover the urgency trigger (why now?)
- Restate the problem using THEIR exact words, including year group, subjects, challenge and goal
- Get verbal confirmation ("Is that right?")

**Red Flags:**
- Skipping labeling entirely
- Moving to the solution without confirmation
- Parroting without synthesis
- No empathy or acknowledgment

**Scoring:**
- 5 (100%): Full discovery, empathy check, restates in their words with all details, verbal confirmation
- 4 (80%): Good summary but weak empathy or confirmation
- 3 (60%): Acknowledges but never gets explicit confirmation
- 2 (40%): Parrots their words without synthesis
- 1 (20%): Skips labeling, moves straight to the pitch""",

    "overview": """### Overview / Pain Cycle (O) - MOST IMPORTANT PHASE
Prospects don't buy without pain. This phase is weighted heavily.

**Required Elements (ALL MUST BE PRESENT FOR A HIGH SCORE):**
1. Ask about ALL past attempts ("What have you tried so far?")
2. Follow up with "How did that go?" for EACH attempt
3. Exhaust with "What else?" until nothing is left (at least 2-3 times)
4. Summarize and confirm that all attempts failed
5. Ask about duration ("How long has this been going on?")
6. Ask about consequences if nothing changes

**Red Flags:**
- Skipping the pain cycle entirely = Score 1 (CRITICAL FAILURE)
- Only asking once about past attempts
- Moving to the pitch before the pain is exhausted

**Scoring:**
- 5 (100%): Every required element, pain fully exhausted, consequences explored
- 4 (80%): Good pain cycle but not fully exhausted OR consequences question missed
- 3 (60%): Asks about past attempts but moves on after 1-2
- 2 (40%): Token question about past attempts
- 1 (20%): Skips the pain cycle and goes straight to the pitch

**STRICT CHECK:** If the rep did NOT ask "What else have you tried?" multiple times AND did NOT ask about consequences, the score CANNOT be above 3.""",

    "sell_vacation": """### Sell the Vacation (S)
**Required Elements:**
- Lead with teacher credentials (names and qualifications from the script)
- Bridge from their SPECIFIC pain point, not a generic pitch
- Explain what the child's week looks like (live lessons, workbooks, recordings)
- Use a proof point matched to their concern
- Mention the money-back guarantee
- Keep it under 3 minutes

**Red Flags:**
- Generic pitch not tailored to their situation
- Features before benefits
- Teacher credentials buried or mentioned as an afterthought
- Monologues over 3 minutes

**Scoring:**
- 5 (100%): Credentials first, bridged from their pain, week explained, relevant proof, guarantee, under 3 min
- 4 (80%): Good pitch but credentials buried or proof generic
- 3 (60%): Mentions teachers but the pitch is not tailored
- 2 (40%): Feature dump, no connection to their pain
- 1 (20%): No teacher quality, no proof, robotic feature list""",

    "price_presentation": """### Price Presentation (P)
**Required Elements:**
- Check for buy-in BEFORE presenting price ("How does all of that sound so far?")
- Lead with the Annual plan as the value anchor
- Frame as an investment compared with private tutor cost
- Present one tier at a time and wait for a response
- Have downsell tiers ready (Monthly, then Trial)
- Mention the payment plan option
- Stay on the line for payment confirmation

**Red Flags:**
- Presenting price without buy-in first = Score 2-3
- Leading with the trial = Score 1-2
- Apologising for the price
- Presenting all options at once

**Scoring:**
- 5 (100%): Buy-in first, leads with Annual, frames value, waits for response, stays on for payment
- 4 (80%): Good presentation but missed buy-in OR slightly rushed
- 3 (60%): Skipped buy-in or led with Monthly
- 2 (40%): All tiers at once, no value framing, or apologetic
- 1 (20%): Leads with the trial, no buy-in check, or skips pricing""",

    "explain": """### Explain / AAA Objection Handling (E)
**Required Elements:**
- Use the AAA framework for objections:
  - Acknowledge: repeat the concern neutrally
  - Associate: connect it to a success story or similar parents
  - Ask: return with a question (never answer directly)
- Identify the obstacle type (money, time, spouse, skepticism)

**Key Principle:** The person asking questions is closing.

**Red Flags:**
- Answering objections directly
- Getting defensive or arguing
- Generic "trust us" responses
- Over-explaining
- Offering discounts to close

**Scoring:**
- 5 (100%): AAA on every objection, responds with questions, identifies the obstacle
- 4 (80%): Mostly AAA but answered one objection directly
- 3 (60%): Answers directly rather than with questions
- 2 (40%): Flustered or defensive
- 1 (20%): No handling, argues, or avoids objections

**Note:** If NO objections were raised, score on whether the rep checked for concerns and moved smoothly to the close. Such a call can still score 80-100%.""",

    "reinforce": """### Reinforce + Close (R)
**Required Elements:**
- Once they agree, STOP SELLING
- Confirm the decision positively
- Send the registration link and stay on the line for payment
- Clear next steps (first class date, account setup)
- End with excitement about getting started

**Red Flags:**
- Keeps selling after they say yes
- No clear next steps
- Not staying on the line for payment
- High-pressure tactics or fake urgency

**Scoring:**
- 5 (100%): Stops selling, stays on for payment, clear logistics, positive send-off
- 4 (80%): Good close, one next step missed
- 3 (60%): Gets the sale but fumbles next steps or keeps selling
- 2 (40%): Weak close, unclear next steps
- 1 (20%): No close attempt, or high-pressure tactics""",
}

QUOTE_HINTS = {
    "opening": "quote showing how they opened",
    "clarify": "quote showing their discovery questions or lack thereof",
    "label": "quote showing their label/summary attempt",
    "overview": "quote showing their pain exploration or lack thereof",
    "sell_vacation": "quote showing their pitch",
    "price_presentation": "quote showing how they presented price or the buy-in question",
    "explain": "quote showing their objection response or their check for concerns",
    "reinforce": "quote showing their close or next steps",
}


def format_timestamp(seconds: float) -> str:
    total = int(seconds or 0)
    return f"{total // 60:02d}:{total % 60:02d}"


def format_transcript(segments: List[TranscriptSegment], timestamps: bool = True) -> str:
    lines = []
    for segment in segments:
        role = "REP" if segment.speaker == "rep" else "PROSPECT"
        if timestamps:
            lines.append(f"[{format_timestamp(segment.start_time)}] {role}: {segment.text}")
        else:
            lines.append(f"{role}: {segment.text}")
    return "\n".join(lines)


def _join_script(value) -> str:
    if isinstance(value, list):
        return "\n".join(str(v) for v in value)
    return value or ""


def _teacher_lines(script: ReferenceScript) -> str:
    details = script.course_details
    if details.teachers:
        return "\n".join(
            f"- {subject}: {info.name} ({_format_credentials(info.credentials)})"
            for subject, info in details.teachers.items()
        )
    if details.teacher:
        return f"- Teacher: {details.teacher.name}\n- Credentials: {_format_credentials(details.teacher.credentials) or 'Not specified'}"
    return "Not specified in script"


def _format_credentials(credentials) -> str:
    if isinstance(credentials, list):
        return ", ".join(credentials)
    return credentials or ""


def _pricing_lines(script: ReferenceScript) -> str:
    lines = []
    for tier, info in script.pricing.items():
        if not isinstance(info, dict) or "price" not in info:
            continue
        label = tier.replace("_", " ").title()
        extras = [str(v) for k, v in info.items() if k != "price" and isinstance(v, (str, int, float))]
        suffix = f" ({', '.join(extras)})" if extras else ""
        lines.append(f"- {label}: {script.currency}{info['price']}{suffix}")
    return "\n".join(lines) if lines else "Not specified"


def build_reference_section(script: Optional[ReferenceScript]) -> str:
    script = script or ReferenceScript()
    details = script.course_details

    parts = [
        "## ACTUAL SCRIPT CONTENT (Use this as the reference - do NOT make up different wording)",
        "",
        "### Course & Teacher Info",
        _teacher_lines(script),
    ]
    if details.name:
        parts.append(f"- Course: {details.name}")
    if details.schedule:
        schedule = details.schedule if isinstance(details.schedule, str) else json.dumps(details.schedule)
        parts.append(f"- Schedule: {schedule}")

    parts += ["", "### Pricing (from script)", _pricing_lines(script)]

    for phase, name in PHASE_NAMES.items():
        phase_script = script.closer_phases.get(phase)
        if phase_script is None and phase == "reinforce":
            phase_script = script.closer_phases.get("reinforce_close")
        text = _join_script(phase_script.exact_script) if phase_script else ""
        parts += ["", f"### {name} Script", text or "Not specified"]

    return "\n".join(parts)


def _banned_phrases(script: ReferenceScript) -> List[str]:
    """Tonality section first, then the top-level list, then the defaults"""
    nested = script.conviction_tonality.banned_phrases if script.conviction_tonality else []
    return nested or script.banned_phrases or DEFAULT_BANNED_PHRASES


def build_system_prompt(policy: ContextPolicy, script: Optional[ReferenceScript] = None) -> str:
    script = script or ReferenceScript()
    rubric = "\n\n".join(
        policy.adapted_criteria.get(phase, PHASE_RUBRICS[phase])
        for phase in policy.retained_phases
    )
    banned = _banned_phrases(script)

    excluded_note = ""
    if policy.excluded_phases:
        names = ", ".join(PHASE_NAMES[p] for p in policy.excluded_phases)
        excluded_note = f"\nThe following phases are NOT scored for this call and must not appear in your response: {names}.\n"

    return f"""{SCORING_SYSTEM_MESSAGE}

## CALL CONTEXT
{policy.context_description}
{excluded_note}
{build_reference_section(script)}

## CRITICAL SCORING RULES

1. **Be STRICT** - show the rep exactly where they deviated from the script
2. **Score based on SPECIFIC requirements** - missing ANY required element drops the score significantly
3. **Use the 1-5 scale** - map to percentages: 5=100%, 4=80%, 3=60%, 2=40%, 1=20%
4. **If they didn't do something, score it LOW** - don't give the benefit of the doubt
5. **Quote specific evidence** - show exactly what they said or DIDN'T say

## PHASE SCORING CRITERIA

{rubric}

## BANNED PHRASES (Deduct points if used)
{', '.join(banned)}

## YOUR TASK
Score each phase listed above STRICTLY against its criteria. For each phase:
1. Give a 1-5 score based on the rubric (then convert to a percentage)
2. List which required elements were PRESENT and which were MISSING
3. Quote specific evidence from the transcript
4. Say what they should have said, using ONLY the wording from the ACTUAL SCRIPT CONTENT section above"""


def _phase_template(phase: str) -> dict:
    return {
        "phase": phase,
        "score": "<number 0-100, based on 1-5 rubric: 5=100, 4=80, 3=60, 2=40, 1=20>",
        "rubric_score": "<1-5>",
        "feedback": "<specific feedback referencing what they DID and DIDN'T do>",
        "required_elements_present": ["<elements they hit>"],
        "required_elements_missing": ["<elements they missed>"],
        "highlights": ["<what was done well>"],
        "improvements": ["<specific things they should have said>"],
        "quotes": [{
            "text": f"<REQUIRED: {QUOTE_HINTS[phase]}>",
            "sentiment": "positive|negative|neutral",
            "timestamp": 0,
        }],
    }


def build_response_template(policy: ContextPolicy) -> str:
    template = {
        "overall_score": "<weighted average, number 0-100>",
        "scores": [_phase_template(p) for p in policy.retained_phases],
        "objections_detected": [{
            "objection": "<the objection raised>",
            "category": CATEGORY_CHOICES,
            "handling_score": "<0-100>",
            "used_aaa": "<true/false>",
            "rep_response": "<summary of how the rep responded>",
            "outcome_after": "handled_well|handled_poorly|unresolved",
            "feedback": "<how it was handled, did they use AAA or answer directly?>",
        }],
        "summary": "<2-3 sentence summary focusing on the BIGGEST gaps and what to fix>",
    }
    return json.dumps(template, indent=2)


def build_user_prompt(transcript: List[TranscriptSegment], policy: ContextPolicy) -> str:
    phase_list = ", ".join(policy.retained_phases)
    return f"""Score this sales call transcript STRICTLY against the CLOSER framework.

## Transcript

{format_transcript(transcript)}

## Required Response Format

Respond with a single JSON object and nothing else. Include exactly these phases, in this order: {phase_list}.

```json
{build_response_template(policy)}
```

**CRITICAL - QUOTES REQUIREMENT:**
For EVERY phase include 1-2 quotes of the rep's EXACT words with the transcript timestamp in seconds.
Mark a quote "negative" if it shows something to improve and "positive" if it was done well.
If the rep skipped a phase, quote where they SHOULD have done it and mark it "negative".
Empty quotes arrays are NOT acceptable."""


def build_objection_prompt(transcript: List[TranscriptSegment]) -> str:
    return f"""Analyze this sales call transcript and identify ALL objections raised by the prospect.

For each objection found, determine:
1. The exact objection text
2. Category: price, timing, spouse, skepticism, past_failures, competition, commitment, or other
3. How well the rep handled it (0-100 score)
4. Whether they used the AAA framework (Acknowledge, Associate, Ask)
5. The rep's response
6. Outcome: handled_well, handled_poorly, or unresolved

TRANSCRIPT:
{format_transcript(transcript, timestamps=False)}

Return a JSON object:
{{
  "objections": [
    {{
      "objection": "exact prospect objection",
      "category": "{CATEGORY_CHOICES}",
      "handling_score": 0-100,
      "used_aaa": true/false,
      "rep_response": "summary of how rep responded",
      "outcome_after": "handled_well|handled_poorly|unresolved"
    }}
  ]
}}

If no objections are found, return {{"objections": []}}."""
