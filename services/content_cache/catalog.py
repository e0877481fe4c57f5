"""Bible translations available for offline download."""

from typing import List, Optional

from shared.models import TranslationInfo


AVAILABLE_TRANSLATIONS: List[TranslationInfo] = [
    TranslationInfo(
        id="de4e12af7f28f599-02",
        abbreviation="NIV",
        name="New International Version",
        language="English",
        estimated_size="4.5 MB",
        estimated_size_bytes=4500000,
        description="A modern, widely-used translation balancing accuracy and readability",
    ),
    TranslationInfo(
        id="de4e12af7f28f599-01",
        abbreviation="KJV",
        name="King James Version",
        language="English",
        estimated_size="4.2 MB",
        estimated_size_bytes=4200000,
        description="Classic translation from 1611, known for poetic language",
    ),
    TranslationInfo(
        id="de4e12af7f28f599-03",
        abbreviation="ESV",
        name="English Standard Version",
        language="English",
        estimated_size="4.3 MB",
        estimated_size_bytes=4300000,
        description="Modern literal translation emphasizing word-for-word accuracy",
    ),
    TranslationInfo(
        id="de4e12af7f28f599-04",
        abbreviation="NLT",
        name="New Living Translation",
        language="English",
        estimated_size="4.6 MB",
        estimated_size_bytes=4600000,
        description="Contemporary translation focusing on readability and clarity",
    ),
]


def find_translation(translation_id: str) -> Optional[TranslationInfo]:
    """Look up a catalog entry by ID."""
    for translation in AVAILABLE_TRANSLATIONS:
        if translation.id == translation_id:
            return translation
    return None
