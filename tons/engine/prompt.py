"""Prompt template substitution."""

from __future__ import annotations

import re

DEFAULT_PROMPT = """Translate the following text from {{source_lang}} to {{target_lang}}.
Keep the original formatting and tone.
Only return the translated text without any explanations.

Text to translate:
{{text}}"""

DEFAULT_SYSTEM_PROMPT = (
    "You are a professional translator. Translate accurately while preserving the original tone, "
    "style, and formatting. Only output the translation without explanations."
)

_PLACEHOLDER = re.compile(r"\{\{(text|source_lang|target_lang)\}\}")


def build_prompt(template: str, text: str, source_lang: str, target_lang: str) -> str:
    """Replace `{{text}}`, `{{source_lang}}` and `{{target_lang}}` in one pass.

    Substituted values are inserted literally: placeholders that appear inside
    `text` are not expanded again, and nothing is escaped.
    """
    values = {"text": text, "source_lang": source_lang, "target_lang": target_lang}
    return _PLACEHOLDER.sub(lambda m: values[m.group(1)], template)
