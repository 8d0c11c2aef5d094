"""
shomer/classifier/taxonomy.py
Fixed category taxonomy. Keys are the category labels the classifier
must return; severities are the nominal tier each category belongs to.
"""

from typing import Dict, Tuple

from shomer.models.risk import Severity

TEXT_CATEGORIES: Tuple[str, ...] = (
    'exclusion', 'suicidal', 'grooming', 'sexual', 'drugs',   # critical
    'bullying', 'violence',                                   # high
    'pressure', 'language',                                   # medium
)

# Only produced by image / video frame analysis.
MEDIA_CATEGORIES: Tuple[str, ...] = (
    'self_harm', 'weapon', 'threat', 'personal_info',
)

ALL_CATEGORIES: Tuple[str, ...] = TEXT_CATEGORIES + MEDIA_CATEGORIES

CATEGORY_SEVERITY: Dict[str, Severity] = {
    'exclusion':     Severity.CRITICAL,
    'suicidal':      Severity.CRITICAL,
    'grooming':      Severity.CRITICAL,
    'sexual':        Severity.CRITICAL,
    'drugs':         Severity.CRITICAL,
    'bullying':      Severity.HIGH,
    'violence':      Severity.HIGH,
    'pressure':      Severity.MEDIUM,
    'language':      Severity.MEDIUM,
    'self_harm':     Severity.CRITICAL,
    'weapon':        Severity.CRITICAL,
    'threat':        Severity.HIGH,
    'personal_info': Severity.MEDIUM,
}

CATEGORY_LABELS: Dict[str, str] = {
    'exclusion':     'Social exclusion',
    'suicidal':      'Suicidal thoughts',
    'grooming':      'Grooming',
    'sexual':        'Sexual content',
    'drugs':         'Drugs / alcohol',
    'bullying':      'Bullying',
    'violence':      'Violence',
    'pressure':      'Peer pressure',
    'language':      'Offensive language',
    'self_harm':     'Self-harm',
    'weapon':        'Weapon',
    'threat':        'Threat',
    'personal_info': 'Exposed personal information',
}

CATEGORY_DEFINITIONS: Dict[str, str] = {
    'exclusion': 'Deliberate social isolation: "don\'t invite him", removal from groups, '
                 'coordinated talking behind someone\'s back',
    'suicidal':  'Suicidal thoughts or self-harm talk, "don\'t want to live", farewell messages',
    'grooming':  'An adult building a relationship for sexual exploitation: excessive flattery, '
                 'secrecy, gifts, gradual sexual topics, requests for photos',
    'sexual':    'Unwanted sexual content, sexting, sending or requesting nude images, '
                 'sexual pressure, sharing intimate images',
    'drugs':     'Buying, selling or using drugs or alcohol, including coded slang and emoji',
    'bullying':  'Humiliation, name-calling, threats, extortion, embarrassing photos',
    'violence':  'Threats of violence, weapons, planning fights',
    'pressure':  '"If you don\'t do X", "everyone does it", dangerous challenges',
    'language':  'Racism, homophobia, unusually degrading language',
}

MEDIA_RECOMMENDATIONS: Dict[str, str] = {
    'sexual':        'Sexual content was detected. Talk with your child about inappropriate '
                     'content and check who the conversation is with.',
    'drugs':         'Signs of drugs or alcohol were detected in an image. Ask your child '
                     'about the context.',
    'self_harm':     'Signs of self-harm were detected. This needs immediate attention; '
                     'consider contacting a professional.',
    'violence':      'Violent content was detected. Talk with your child to understand the context.',
    'weapon':        'A weapon was detected in an image. Find out the context right away.',
    'threat':        'A threatening message was detected. Talk with your child and consider reporting it.',
    'personal_info': 'Personal information (address / phone) was exposed. Remind your child '
                     'not to share personal details.',
}

GENERIC_RECOMMENDATION = 'Review the conversation context and talk with your child.'


def recommendation_for(category: str) -> str:
    return MEDIA_RECOMMENDATIONS.get(category, GENERIC_RECOMMENDATION)


def category_label(category: str) -> str:
    return CATEGORY_LABELS.get(category, category)
