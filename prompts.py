from typing import Dict, List

from schemas import Direction, Style, TranslationRequest


# =========================
# Direction / style phrasing
# =========================

DIRECTION_PHRASES = {
    Direction.MODERN_TO_ANCIENT: "from modern to ancient greek",
    Direction.ANCIENT_TO_MODERN: "from ancient to modern greek",
}

DIRECTION_PHRASES_EL = {
    Direction.MODERN_TO_ANCIENT: "από νέα ελληνικά σε αρχαία ελληνικά",
    Direction.ANCIENT_TO_MODERN: "από αρχαία ελληνικά σε νέα ελληνικά",
}

CHAT_DIRECTION_PROMPTS = {
    Direction.MODERN_TO_ANCIENT: "Translate the following Modern Greek text to Ancient Greek:",
    Direction.ANCIENT_TO_MODERN: "Translate the following Ancient Greek text to Modern Greek:",
}

STYLE_INSTRUCTIONS = {
    Style.STANDARD: "",
    Style.FORMAL_REGISTER: " Use a formal, literary register.",
}

STYLE_INSTRUCTIONS_EL = {
    Style.STANDARD: "",
    Style.FORMAL_REGISTER: " Χρησιμοποίησε επίσημο, λόγιο ύφος.",
}

CHAT_SYSTEM_PROMPT = (
    "You are a highly accurate Greek language translator. "
    "Translate between Modern Greek and Ancient Greek precisely according to the "
    "user's specified direction. Provide ONLY the translation and nothing else."
)


# =========================
# Renderers
# =========================

def completion_prompt(request: TranslationRequest) -> str:
    """Single prompt string for raw completion backends (Ollama, TGI)."""
    return (
        f"Translate {DIRECTION_PHRASES[request.direction]}."
        f"{STYLE_INSTRUCTIONS[request.style]} "
        f'Send only the translation. Text to translate is this: "{request.text}"'
    )


def chat_messages(request: TranslationRequest) -> List[Dict[str, str]]:
    """System + user messages for chat completion providers."""
    return [
        {"role": "system", "content": CHAT_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"{CHAT_DIRECTION_PROMPTS[request.direction]}\n\n{request.text}\n\n"
                f"Send only the translated text.{STYLE_INSTRUCTIONS[request.style]}"
            ),
        },
    ]


def greek_prompt(request: TranslationRequest) -> str:
    """Greek-language instruction prompt (Gemini)."""
    return (
        "Είσαι ένας εξειδικευμένος μεταφραστής. "
        f"Μετάφρασε το παρακάτω κείμενο {DIRECTION_PHRASES_EL[request.direction]}."
        f"{STYLE_INSTRUCTIONS_EL[request.style]} "
        "Δώσε μόνο τη μετάφραση και τίποτα άλλο, χωρίς επιπλέον σχόλια ή επεξηγήσεις."
        f"\n\nΚείμενο προς μετάφραση:\n{request.text}\n\nΜετάφραση:"
    )
