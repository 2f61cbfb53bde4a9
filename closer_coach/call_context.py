from typing import Dict, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .schemas import CallContext, ALL_PHASES


CONTEXT_LABELS = {
    CallContext.NEW_LEAD: "New Lead",
    CallContext.BOOKED_CALL: "Booked Call",
    CallContext.WARM_LEAD: "Warm Lead",
    CallContext.FOLLOW_UP: "Follow-Up",
}

DISCOVERY_PHASES = ("clarify", "label", "overview")


class ContextPolicy(BaseModel):
    """Which CLOSER phases are scored for a call context and how their rubric reads"""
    model_config = ConfigDict(frozen=True)

    context: CallContext
    excluded_phases: Tuple[str, ...] = ()
    adapted_criteria: Dict[str, str] = Field(default_factory=dict)
    context_description: str

    @property
    def retained_phases(self) -> List[str]:
        return [p for p in ALL_PHASES if p not in self.excluded_phases]

    def is_retained(self, phase: str) -> bool:
        return phase in ALL_PHASES and phase not in self.excluded_phases


BOOKED_CLARIFY = """### Clarify (C) + Kill Zombies [BOOKED CALL]
The prospect booked this call and already gave details on the booking form
(child's name, year group, subjects). Do NOT penalise the rep for not asking
questions whose answers were captured at booking.

**Required Elements:**
- Confirm the booked details briefly instead of re-asking them
- Check for siblings (discount opportunity)
- Kill zombies: check whether a spouse/partner needs to be involved
- Fill any gaps the booking form left open

**Red Flags:**
- Re-asking every booking question as if the call were cold
- Not addressing the decision-maker question

**Scoring:**
- 5 (100%): Confirms booked details, checks siblings, kills zombies, fills gaps with open questions
- 4 (80%): Good confirmation but misses the sibling check or zombie kill
- 3 (60%): Skips confirmation and assumes details are still correct
- 2 (40%): Re-runs the full discovery script, ignoring the booking
- 1 (20%): No clarification at all before pitching"""

WARM_OPENING = """### Opening [WARM LEAD]
The rep and prospect have already been messaging. A full re-introduction is
NOT expected.

**Required Elements:**
- Greet by name and reference the ongoing conversation ("Following on from our messages...")
- Recording disclosure and consent
- Plan for the call and a micro-commitment

**Red Flags:**
- Introducing the company as if this were a cold call
- No reference to what was already discussed

**Scoring:**
- 5 (100%): Personal greeting, clear continuity reference, recording disclosed, agenda with micro-commitment
- 4 (80%): Continuity reference present but agenda or disclosure missing
- 3 (60%): Generic opening with a weak link to previous messages
- 2 (40%): Full cold-call introduction, no continuity
- 1 (20%): No opening structure at all"""

WARM_SELL_VACATION = """### Sell the Vacation (S) [WARM LEAD]
Discovery happened in earlier messages. The pitch should build on what the
prospect already shared rather than re-discovering it.

**Required Elements:**
- Reference the pain points the prospect already shared
- Lead with teacher credentials and proof matched to those pain points
- Explain what the child's week looks like
- Mention the money-back guarantee

**Red Flags:**
- Generic pitch that ignores the earlier conversation
- Re-running discovery questions instead of selling

**Scoring:**
- 5 (100%): Pitch clearly tied to previously shared pain, credentials and proof up front, guarantee mentioned
- 4 (80%): Good pitch with a weak link to the earlier conversation
- 3 (60%): Generic pitch with some relevant proof
- 2 (40%): Feature dump, no continuity
- 1 (20%): No pitch, or discovery restarted from scratch"""

FOLLOW_UP_OPENING = """### Opening [FOLLOW-UP]
This is a return call after a previous conversation.

**Required Elements:**
- Greet by name and recap the previous call in one or two sentences
- Confirm what has changed since then
- Set the goal of this call (make a decision)

**Red Flags:**
- Starting over as if the previous call never happened
- No recap of what was agreed last time

**Scoring:**
- 5 (100%): Warm recap, checks for changes, sets a decision-focused agenda
- 4 (80%): Recap present but no clear goal for the call
- 3 (60%): Vague reference to the previous call
- 2 (40%): Restarts the full script
- 1 (20%): No opening structure"""

FOLLOW_UP_SELL_VACATION = """### Sell the Vacation (S) [FOLLOW-UP]
The pitch was already delivered last time. Focus on recap-and-close.

**Required Elements:**
- Recap the outcome the prospect said they wanted
- Re-anchor on the one or two proof points that mattered to them
- Move quickly towards the decision

**Red Flags:**
- Repeating the whole pitch
- Introducing new features instead of closing

**Scoring:**
- 5 (100%): Tight recap tied to their stated outcome, quick move to the close
- 4 (80%): Good recap but slightly long
- 3 (60%): Re-pitches more than needed
- 2 (40%): Full pitch repeated, no push to decide
- 1 (20%): No recap and no close attempt"""

FOLLOW_UP_REINFORCE = """### Reinforce + Close (R) [FOLLOW-UP]
The goal of a follow-up is a decision. Weight the close heavily.

**Required Elements:**
- Ask for the decision directly
- Once they agree, stop selling and confirm the decision positively
- Send the registration link and stay on the line for payment
- Clear next steps (first class date, account setup)

**Red Flags:**
- Ending the call without asking for a decision
- Booking yet another follow-up without a concrete reason

**Scoring:**
- 5 (100%): Asks for the decision, handles it cleanly, stays on for payment, clear next steps
- 4 (80%): Gets a decision but next steps are loose
- 3 (60%): Asks weakly, accepts a soft "maybe"
- 2 (40%): Books another follow-up without pushing for a decision
- 1 (20%): No close attempt"""


CONTEXT_POLICIES = {
    CallContext.NEW_LEAD: ContextPolicy(
        context=CallContext.NEW_LEAD,
        context_description="First ever interaction: full CLOSER scoring.",
    ),
    CallContext.BOOKED_CALL: ContextPolicy(
        context=CallContext.BOOKED_CALL,
        adapted_criteria={"clarify": BOOKED_CLARIFY},
        context_description="They booked a call: relaxed discovery criteria. Details captured at booking count as already clarified.",
    ),
    CallContext.WARM_LEAD: ContextPolicy(
        context=CallContext.WARM_LEAD,
        excluded_phases=DISCOVERY_PHASES,
        adapted_criteria={"opening": WARM_OPENING, "sell_vacation": WARM_SELL_VACATION},
        context_description="Already been messaging: discovery phases (Clarify, Label, Overview) are excluded and continuity is expected.",
    ),
    CallContext.FOLLOW_UP: ContextPolicy(
        context=CallContext.FOLLOW_UP,
        excluded_phases=DISCOVERY_PHASES,
        adapted_criteria={
            "opening": FOLLOW_UP_OPENING,
            "sell_vacation": FOLLOW_UP_SELL_VACATION,
            "reinforce": FOLLOW_UP_REINFORCE,
        },
        context_description="Returning from a previous call: discovery phases (Clarify, Label, Overview) are excluded. Score recap-and-close, not discovery.",
    ),
}


def get_context_policy(context: Union[CallContext, str, None]) -> ContextPolicy:
    """Look up the policy for a context; None means a new lead"""
    if context is None:
        return CONTEXT_POLICIES[CallContext.NEW_LEAD]
    return CONTEXT_POLICIES[CallContext(context)]


def retained_phases(context: Union[CallContext, str, None]) -> List[str]:
    return get_context_policy(context).retained_phases
