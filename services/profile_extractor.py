"""
Profile extraction
Merges facts learned from a conversation turn into the natural-language profile.
Merges are additive: a turn with nothing new returns the profile unchanged.
"""
import re
from typing import List, Optional, Protocol, Tuple
import logging

from services.pii_masking import PIIMaskingService
from services.token_vault import TokenVault
from services.tokenization import ConversationTurn

logger = logging.getLogger(__name__)

PROFILE_SYSTEM_INSTRUCTION = (
    "You maintain a short natural-language profile of a personal-finance user. "
    "Values written as ⟦TYPE_N⟧ are placeholders for private data; copy them exactly and never invent new ones."
)

PROFILE_PROMPT = """Analyze this financial conversation and update the user's profile.

Current conversation:
Q: {question}
A: {answer}

{existing}

Extract any new information about the user from the question and answer and update the profile text.
Include details like:
- Age or age range
- Occupation or employer
- Family status and children
- Location or city
- Income level or financial situation
- Financial goals and priorities
- Investment style or risk tolerance
- Debt situation

IMPORTANT: Only return the updated profile text in natural language format.
Do NOT include the original question or answer in the profile.
Keep every fact from the current profile unless the user corrected it.
If no new information is found, return the existing profile unchanged."""

# Labels holding one value; a new sentence with the same label is a correction
SINGLE_VALUED_LABELS = {
    "Age", "Occupation", "Employer", "Income", "Location", "Marital status", "Children", "Risk tolerance",
}
SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+|\n+")


class ProfileMerger(Protocol):
    async def merge(self, old_profile: str, turn: ConversationTurn) -> str:
        ...


# ---------------------------------------------------------------- rule-based

AGE_PATTERN = re.compile(r"\b(\d{2})[- ]years?[- ]old\b|\b(?:I am|I'm)\s+(\d{2})\b(?!\s*(?:%|percent|k\b))")
OCCUPATION_PATTERN = re.compile(
    r"\b(?:I am|I'm|I work as)\s+(?:a|an)\s+(?:\d{1,3}[- ]years?[- ]old\s+)?([a-z]+(?:\s+[a-z]+)?)"
)
EMPLOYER_PATTERN = re.compile(r"\bI work (?:at|for)\s+([A-Z][\w&.]*(?:\s+[A-Z][\w&.]*)*)")
INCOME_PATTERN = re.compile(
    r"\b(?:earn|earning|make|making|salary of|salary is|income of|income is|paid)\s+"
    r"(?:about\s+|around\s+|roughly\s+|over\s+)?(\$\s?\d[\d,]*(?:\.\d+)?\s?[kK]?)"
    r"(?:\s*(?:a|per|/)\s*(year|yr|month|mo|hour|hr))?"
)
LOCATION_PATTERN = PIIMaskingService.LOCATION_PATTERN
MARITAL_PATTERN = re.compile(r"\b(?:I am|I'm|we are|we're)\s+(married|single|divorced|widowed|engaged)\b", re.IGNORECASE)
CHILDREN_PATTERN = re.compile(
    r"\b(?:I have|we have|with)\s+(\d+|one|two|three|four|five|a)\s+(kids?|children|child|sons?|daughters?)\b",
    re.IGNORECASE,
)
RISK_PATTERN = re.compile(
    r"\b(conservative|moderate|aggressive)\s+(?:investor|investing|risk|approach)\b"
    r"|\brisk tolerance is\s+(low|medium|moderate|high)\b",
    re.IGNORECASE,
)
GOAL_PATTERN = re.compile(
    r"\b(?:saving|save|planning|plan|hoping|trying|my goal is|want)\s+(?:up\s+)?(?:to|for)\s+([^.,!?;]{3,60})",
    re.IGNORECASE,
)
DEBT_PATTERN = re.compile(
    r"\b(?:have|owe|carrying|with)\s+(?:about\s+|around\s+|roughly\s+)?(\$\s?\d[\d,]*(?:\.\d+)?\s?[kK]?)\s+"
    r"(?:in|of)\s+((?:student|credit card|car|auto|medical|personal)\s+(?:loans?|debt)|debt)",
    re.IGNORECASE,
)

OCCUPATION_STOP_WORDS = {
    "earning", "making", "who", "with", "and", "living", "in", "at", "working", "from", "looking",
    "trying", "planning", "but", "that", "currently",
}
NOT_OCCUPATIONS = {
    "single", "married", "divorced", "widowed", "little", "bit", "first", "new", "big", "homeowner",
    "renter", "parent", "beginner", "conservative", "moderate", "aggressive", "lot",
}
NON_GOALS = ("know", "understand", "see", "learn", "ask", "find out", "check", "figure", "compare")
PERIODS = {"year": "per year", "yr": "per year", "month": "per month", "mo": "per month",
           "hour": "per hour", "hr": "per hour"}


def _occupation(match: re.Match) -> Optional[str]:
    words = []
    for word in match.group(1).split():
        if word in OCCUPATION_STOP_WORDS:
            break
        words.append(word)
    if not words or words[0] in NOT_OCCUPATIONS:
        return None
    return " ".join(words)


def extract_facts(text: str) -> List[Tuple[str, str]]:
    """
    Pull durable facts out of a user's message.

    Returns:
        (key, sentence) pairs; key identifies the kind of fact so a corrected
        value replaces the old line instead of piling up next to it
    """
    facts: List[Tuple[str, str]] = []
    if not text:
        return facts

    match = AGE_PATTERN.search(text)
    if match:
        facts.append(("Age", f"Age: {match.group(1) or match.group(2)}."))

    match = OCCUPATION_PATTERN.search(text)
    occupation = _occupation(match) if match else None
    if occupation:
        facts.append(("Occupation", f"Occupation: {occupation}."))

    match = EMPLOYER_PATTERN.search(text)
    if match:
        facts.append(("Employer", f"Employer: {match.group(1)}."))

    match = INCOME_PATTERN.search(text)
    if match:
        period = PERIODS.get((match.group(2) or "").lower())
        amount = match.group(1).replace(" ", "")
        facts.append(("Income", f"Income: {amount}{' ' + period if period else ''}."))

    match = LOCATION_PATTERN.search(text)
    if match:
        facts.append(("Location", f"Location: {match.group(1)}."))

    match = MARITAL_PATTERN.search(text)
    if match:
        facts.append(("Marital status", f"Marital status: {match.group(1).lower()}."))

    match = CHILDREN_PATTERN.search(text)
    if match:
        count = "1" if match.group(1).lower() == "a" else match.group(1).lower()
        facts.append(("Children", f"Children: {count} {match.group(2).lower()}."))

    match = RISK_PATTERN.search(text)
    if match:
        facts.append(("Risk tolerance", f"Risk tolerance: {(match.group(1) or match.group(2)).lower()}."))

    for match in GOAL_PATTERN.finditer(text):
        goal = match.group(1).strip()
        if goal.lower().startswith(NON_GOALS):
            continue
        facts.append((f"Goal:{goal.lower()}", f"Goal: {goal}."))

    for match in DEBT_PATTERN.finditer(text):
        facts.append((f"Debt:{match.group(2).lower()}", f"Debt: {match.group(1).replace(' ', '')} in {match.group(2).lower()}."))

    return facts


def merge_facts(old_profile: str, facts: List[Tuple[str, str]]) -> str:
    """Add fact lines to the profile; a line with the same "Key:" prefix is replaced, identical lines are skipped."""
    lines = [line for line in (old_profile or "").splitlines()]
    existing = {line.strip().lower() for line in lines}
    changed = False

    for key, sentence in facts:
        if sentence.lower() in existing:
            continue
        prefix = key.split(":", 1)[0] + ":"
        replace_index = None
        if ":" not in key:
            # single-valued fact: replace the previous value
            replace_index = next(
                (i for i, line in enumerate(lines) if line.strip().startswith(prefix)), None
            )
        if replace_index is not None:
            lines[replace_index] = sentence
        else:
            lines.append(sentence)
        existing.add(sentence.lower())
        changed = True

    if not changed:
        return old_profile
    return "\n".join(line for line in lines if line.strip())


def profile_sentences(text: str) -> List[str]:
    return [s.strip() for s in SENTENCE_SPLIT.split(text or "") if s.strip()]


def additive_merge(old_profile: str, candidate: str) -> str:
    """
    Fold a rewritten profile into the old one without losing anything.

    Every existing line is kept. Sentences of ``candidate`` that are not
    already present are appended. A labelled single-valued fact ("Age: 36.")
    replaces the old line with that label, unless the old value already
    contains the new one.
    """
    old_lines = [line.strip() for line in (old_profile or "").splitlines() if line.strip()]
    known = {s.lower() for s in profile_sentences(old_profile)}
    facts: List[Tuple[str, str]] = []
    for sentence in profile_sentences(candidate):
        if sentence.lower() in known:
            continue
        label, _, value = sentence.partition(":")
        label = label.strip()
        key = f"Note:{sentence.lower()}"
        if value.strip() and label in SINGLE_VALUED_LABELS:
            current = next((line for line in old_lines if line.startswith(label + ":")), None)
            if current is None:
                key = label
            elif len(profile_sentences(current)) == 1:
                if value.strip().rstrip(".").lower() in current.lower():
                    continue
                key = label
        facts.append((key, sentence))
        known.add(sentence.lower())

    if not facts:
        return old_profile
    return merge_facts(old_profile, facts)


class RuleBasedProfileMerger:
    """Deterministic merger used when no LLM is configured for profile learning"""

    async def merge(self, old_profile: str, turn: ConversationTurn) -> str:
        # Only the user's own words are treated as facts about the user
        facts = extract_facts(turn.question)
        if not facts:
            return old_profile
        return merge_facts(old_profile, facts)


# ---------------------------------------------------------------- LLM-based

class LLMProfileMerger:
    """Asks the LLM to rewrite the profile, with sensitive values tokenized for the call"""

    def __init__(self, llm, pii_masker: Optional[PIIMaskingService] = None):
        self.llm = llm
        self.pii_masker = pii_masker or PIIMaskingService()

    async def merge(self, old_profile: str, turn: ConversationTurn) -> str:
        """
        Merge one conversation turn into the profile.

        Args:
            old_profile: Current profile plaintext (may be empty)
            turn: The question and answer just exchanged

        Returns:
            The updated profile, or ``old_profile`` when the model returned
            nothing usable or the call failed
        """
        vault = TokenVault()
        tokenized_profile = self.pii_masker.tokenize_text(old_profile or "", vault)
        question = self.pii_masker.tokenize_text(turn.question or "", vault)
        answer = self.pii_masker.tokenize_text(turn.answer or "", vault)
        existing = f"Current profile: {tokenized_profile}" if tokenized_profile else "No existing profile."

        prompt = PROFILE_PROMPT.format(
            question=question,
            answer=answer or "(No answer yet - extracting from question only)",
            existing=existing,
        )

        try:
            raw = await self.llm.complete(PROFILE_SYSTEM_INSTRUCTION, prompt)
        except Exception as e:
            logger.error(f"Profile extraction failed, keeping existing profile: {e.__class__.__name__}")
            return old_profile

        candidate = (raw or "").strip()
        if not candidate:
            return old_profile
        unresolved = vault.unresolved_tokens(candidate)
        if unresolved:
            logger.warning(f"Profile extraction produced {len(unresolved)} unknown tokens, keeping existing profile")
            return old_profile

        restored = vault.detokenize(candidate)
        if restored in ((turn.question or "").strip(), (turn.answer or "").strip()):
            logger.warning("Extracted profile appears to be raw conversation, keeping existing profile")
            return old_profile
        if not old_profile or not old_profile.strip():
            return restored
        # The model may drop or reword facts; only its additions are taken
        return additive_merge(old_profile, restored)
