"""Instruction templates for transcription and text stages.

WHY: Each stage needs a system instruction and a user prompt built around
the source text. Keeping the wording out of the client means the HTTP code
stays about HTTP.

RULES:
- Every stage prompt ends with the full input text
- CUSTOM prompts lead with the user's instruction
- Model output is passed through strip_code_fences() before use
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from chunkscribe.core.models import StageKind

TRANSCRIBE_PROMPT = """You are a professional verbatim transcriber.

STRICT RULES:
1. Transcribe the audio exactly word for word in its original language (Persian/Farsi).
2. Do not summarize, do not drop repeated words, do not fix grammar.
3. Do not add introductions such as "Here is the text" or "Transcription:".
4. Return only the transcript text.
5. If the audio is silent, return an empty string.
"""

_STAGE_INSTRUCTIONS = {
    StageKind.ARABIC_DIACRITICS: (
        "You are an expert Persian/Arabic linguist and text formatter.",
        """JOB:
1. Identify every Arabic segment (Quranic verses, hadiths, Arabic phrases) inside the Persian input.
2. Add full diacritics (tashkeel) to those Arabic segments.
3. Wrap each Arabic segment in guillemets (« »).
4. Bold each Arabic segment with HTML <strong> tags, not markdown stars.

STRICT RULES:
- Do not touch the Persian text.
- Do not summarize.
- Return the full text.
""",
    ),
    StageKind.TITLES: (
        "You are a content structurer.",
        """Task: add hierarchical headings (H1, H2, H3) where the topic changes.

STRICT RULES:
1. Use HTML headings (<h1>, <h2>, <h3>), not markdown (#).
2. Do not change, delete or summarize the body text.
3. Keep every paragraph word for word identical to the input.
4. Only insert headings between paragraphs; headings are in Persian.
5. Output the full text with the headings embedded.
""",
    ),
    StageKind.FORMAL: (
        "You are a Persian language expert.",
        """Task: convert colloquial Persian words to their formal written forms.

STRICT RULES:
1. Work word by word.
2. Do not summarize, do not delete sentences, do not rewrite the meaning.
3. Only change word morphology; keep already formal words exactly as they are.
4. The output language must be Persian.
""",
    ),
    StageKind.CUSTOM: (
        "You are a versatile text editor.",
        """STRICT RULES:
1. Unless explicitly told to summarize, do not summarize.
2. Unless explicitly told to change language, keep the output in Persian.
3. Apply the user's instructions to the text.
""",
    ),
}

_FENCE_OPEN = re.compile(r"^```(?:markdown|html)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*```$")


def build_stage_prompt(
    stage: StageKind,
    text: str,
    custom_prompt: Optional[str] = None,
) -> Tuple[str, str]:
    """Return (system_instruction, user_prompt) for a text stage.

    Raises:
        ValueError: For RAW (not a text stage) or a CUSTOM stage without an
            instruction.
    """
    if stage not in _STAGE_INSTRUCTIONS:
        raise ValueError("Not a text stage: {}".format(stage.value))

    system_instruction, rules = _STAGE_INSTRUCTIONS[stage]
    if stage == StageKind.CUSTOM:
        if not custom_prompt or not custom_prompt.strip():
            raise ValueError("A custom stage needs an instruction")
        rules = "{}\n\n{}".format(custom_prompt.strip(), rules)

    return system_instruction, "{}\nInput text:\n{}".format(rules, text)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` fence (optionally tagged markdown/html)."""
    return _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text.strip())).strip()
