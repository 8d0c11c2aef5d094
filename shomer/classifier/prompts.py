"""
shomer/classifier/prompts.py
Prompt builders for triage, escalation, media and new-contact assessment.

The system prompt is parameterized by the subject's age band and declared
gender. All prompts instruct the model to summarize, never to quote.
"""

from datetime import date, datetime, timezone
from typing import List, Optional, Sequence

from shomer.classifier.taxonomy import (
    CATEGORY_DEFINITIONS,
    MEDIA_CATEGORIES,
    TEXT_CATEGORIES,
)
from shomer.models.record import ChatInfo, Finding, MessageRecord, SubjectProfile

DEFAULT_AGE = 12

# ── AGE BANDS ────────────────────────────────────────────────
# Upper bound (inclusive) → band name. Anything above the last bound is "older".
AGE_BANDS = (
    (10, 'young'),
    (13, 'preteen'),
    (16, 'teen'),
)

AGE_GUIDANCE = {
    'young': (
        "The child is {age} — VERY HIGH sensitivity.\n"
        "- Flag any sexual language, even mild\n"
        "- Flag any violent content\n"
        "- Low threshold for every category\n"
        "- Pay special attention to adults talking with the child"
    ),
    'preteen': (
        "The child is {age} — HIGH sensitivity.\n"
        "- Social exclusion is especially common at this age; watch closely\n"
        "- Flag any dating / relationship content\n"
        "- Bullying is very common at this age; flag it"
    ),
    'teen': (
        "The child is {age} — MEDIUM sensitivity.\n"
        "- Focus on serious threats: drugs, grooming, suicidal content\n"
        "- Some profanity is normal at this age; do not report mild swearing\n"
        "- Watch for sextortion and sexting"
    ),
    'older': (
        "The child is {age} — report CRITICAL issues only.\n"
        "- Drugs, sexual exploitation, suicidal content\n"
        "- Ordinary social conflicts: do not report\n"
        "- Crude language and jokes: not relevant at this age"
    ),
}

GENDER_GUIDANCE = {
    'girl': (
        "The child is a girl — heightened sensitivity to:\n"
        "- Grooming and sexual harassment\n"
        "- Negative body image and comments on appearance\n"
        "- Social exclusion and gossip\n"
        "- Social pressure to send photos"
    ),
    'boy': (
        "The child is a boy — heightened sensitivity to:\n"
        "- Violence and physical threats\n"
        "- Drug and alcohol use\n"
        "- Aggressive bullying\n"
        "- Dangerous challenges"
    ),
}

FINDINGS_SCHEMA = (
    '{\n'
    '  "findings": [\n'
    '    {\n'
    '      "severity": "critical|high|medium|low|info",\n'
    '      "category": "<one of the categories>",\n'
    '      "summary": "short summary of what was detected",\n'
    '      "recommendation": "recommendation for the parent",\n'
    '      "confidence": 0.0-1.0\n'
    '    }\n'
    '  ]\n'
    '}\n\n'
    'If there are no findings, return: { "findings": [] }'
)

NO_QUOTE_RULE = (
    "NEVER quote the original text of any message in summary or recommendation. "
    "Describe the finding in general terms. Contact and group names may be mentioned."
)


def calculate_age(birthdate: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Whole years from an ISO birthdate. None if missing or unparseable."""
    if not birthdate:
        return None
    try:
        born = date.fromisoformat(birthdate[:10])
    except ValueError:
        return None
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def age_band(age: Optional[int]) -> str:
    age = age if age is not None else DEFAULT_AGE
    for upper, band in AGE_BANDS:
        if age <= upper:
            return band
    return 'older'


def build_system_prompt(subject: SubjectProfile) -> str:
    age = subject.age if subject.age is not None else DEFAULT_AGE
    band = age_band(age)
    parts = [
        "You are a child-protection system. You analyze a child's chat "
        "conversations and identify dangerous content.",
        AGE_GUIDANCE[band].format(age=age),
    ]
    gender = GENDER_GUIDANCE.get((subject.gender or '').lower())
    if gender:
        parts.append(gender)

    categories = '\n'.join(
        f"- {cat}: {CATEGORY_DEFINITIONS[cat]}" for cat in TEXT_CATEGORIES
    )
    parts.append(
        "Categories, in order of severity "
        "(CRITICAL: exclusion, suicidal, grooming, sexual, drugs; "
        "HIGH: bullying, violence; MEDIUM: pressure, language):\n" + categories
    )
    parts.append(
        "Important:\n"
        "- You receive NEW messages plus CONTEXT (earlier messages). Analyze the new "
        "messages in light of the conversation.\n"
        "- The child's messages are labelled with the child's name.\n"
        "- Expect slang, several languages, emoji and codes.\n"
        "- Do not report normal conversations. Only real findings.\n"
        "- Give a confidence between 0 and 1. Do not report anything below 0.5.\n"
        f"- {NO_QUOTE_RULE}"
    )
    parts.append("Respond ONLY with JSON:\n" + FINDINGS_SCHEMA)
    return '\n\n'.join(parts)


def format_message_line(msg: MessageRecord, subject_name: str) -> str:
    time_str = datetime.fromtimestamp(msg.timestamp, tz=timezone.utc).strftime('%H:%M')
    sender   = subject_name if msg.is_subject_author else (msg.sender_name or 'participant')
    if msg.transcript:
        text = f"[{msg.media_kind or 'media'} transcript] {msg.transcript}"
    elif msg.media_kind and not (msg.body or '').strip():
        text = f"[{msg.media_kind}]"
    else:
        text = msg.body
    return f"{time_str} [{sender}]: {text}"


def _chat_header(chat: ChatInfo) -> str:
    if chat.is_group:
        return f'Group: "{chat.chat_name}"'
    return f"Private chat with: {chat.chat_name}"


def _subject_header(subject: SubjectProfile) -> str:
    kind = 'girl' if (subject.gender or '').lower() == 'girl' else 'child'
    if subject.age is not None:
        return f"{kind}, age {subject.age}, name: {subject.name}"
    return f"{kind}, name: {subject.name}"


def build_batch_prompt(
    subject:  SubjectProfile,
    chat:     ChatInfo,
    context:  Sequence[MessageRecord],
    messages: Sequence[MessageRecord],
) -> str:
    lines = [_chat_header(chat), _subject_header(subject), '']
    if context:
        lines.append(f"── CONTEXT ({len(context)} earlier messages) ──")
        lines.extend(format_message_line(m, subject.name) for m in context)
        lines.append('')
    lines.append(f"── NEW MESSAGES TO SCAN ({len(messages)}) ──")
    lines.extend(format_message_line(m, subject.name) for m in messages)
    return '\n'.join(lines)


def build_deep_prompt(
    subject:  SubjectProfile,
    chat:     ChatInfo,
    context:  Sequence[MessageRecord],
    messages: Sequence[MessageRecord],
    initial:  Sequence[Finding],
) -> str:
    prior = '\n'.join(
        f"- {f.severity.label} / {f.category} (confidence {f.confidence:.2f}): {f.summary}"
        for f in initial
    )
    lines = [
        "DEEP ANALYSIS",
        '',
        _chat_header(chat),
        f"Child's name: {subject.name}",
        '',
        "Initial findings (hypotheses from a faster model):",
        prior or '- none',
        '',
        "── CONTEXT ──",
    ]
    lines.extend(format_message_line(m, subject.name) for m in context)
    lines.append('')
    lines.append("── NEW MESSAGES ──")
    lines.extend(format_message_line(m, subject.name) for m in messages)
    lines.append('')
    lines.append(
        "Perform a careful analysis. Check:\n"
        "1. Are the initial findings accurate? They may be false positives — override them if so.\n"
        "2. Is there context that changes the meaning?\n"
        "3. What is the real risk level?\n"
        "4. What exactly should the parent do?\n"
        "Your answer REPLACES the initial findings. Respond with JSON as before."
    )
    return '\n'.join(lines)


VISION_PROMPT = (
    "You are a child-protection system analyzing an image sent in a child's chat.\n\n"
    "Check whether the image contains:\n"
    "CRITICAL: sexual content / nudity (sexual), drugs, drug paraphernalia or alcohol (drugs), "
    "self-harm such as cuts or scratches (self_harm), weapons (weapon)\n"
    "HIGH: violence or blood (violence), threatening text in the image (threat), "
    "screenshots of suspicious conversations (bullying)\n"
    "MEDIUM: exposed personal information such as an address or phone number (personal_info)\n\n"
    "Describe the image briefly and report every suspicious finding. "
    f"{NO_QUOTE_RULE}\n\n"
    "Respond ONLY with JSON:\n"
    '{\n'
    '  "description": "short neutral description of the image",\n'
    '  "findings": [\n'
    '    {"severity": "critical|high|medium|low", '
    f'"category": "{"|".join(TEXT_CATEGORIES + MEDIA_CATEGORIES)}", '
    '"summary": "what was detected", "confidence": 0.0-1.0}\n'
    '  ]\n'
    '}\n'
    'If nothing is suspicious: { "description": "...", "findings": [] }'
)

TRANSCRIPTION_PROMPT = (
    "Transcribe the following recording. It may mix several languages.\n"
    'Respond with JSON: { "transcription": "the transcribed text", "language": "code or mixed" }'
)


def build_transcript_system_prompt(subject: SubjectProfile) -> str:
    """Voice messages are scanned with the same taxonomy and age weighting as text."""
    return (
        build_system_prompt(subject)
        + "\n\nThe input is the transcript of a single voice message."
    )


def build_contact_prompt(
    subject:      SubjectProfile,
    contact_name: str,
    messages:     List[MessageRecord],
) -> str:
    age_label = f"age {subject.age}" if subject.age is not None else ''
    chat_log = '\n'.join(
        f"[{subject.name if m.is_subject_author else contact_name}]: {m.transcript or m.body}"
        for m in messages
    )
    return (
        f"You analyze children's conversations. {subject.name} {age_label} started "
        f'talking with a new contact named "{contact_name}".\n\n'
        f"The conversation so far:\n{chat_log}\n\n"
        "Briefly assess (2-3 sentences):\n"
        "1. Who this contact probably is (a peer of the same age? an adult? unclear?)\n"
        "2. Whether anything needs attention\n"
        "3. Overall: normal / worth following / concerning\n\n"
        "Do not quote the messages and do not mention names. Answer in plain text, not JSON."
    )
