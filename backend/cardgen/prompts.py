"""
Prompt templates and output contract for flashcard generation.
"""

from cardgen.providers.base import JsonSchemaSpec, ResponseFormat

MAX_PROPOSALS = 5
MAX_FRONT_LENGTH = 200
MAX_BACK_LENGTH = 500

FLASHCARD_SYSTEM_PROMPT = f"""You are a flashcard generator. Your task is to create educational flashcards from provided text.

Rules:
1. Generate up to {MAX_PROPOSALS} flashcards from the provided text
2. Each flashcard must have a "front" (question or prompt) and "back" (answer or explanation)
3. Front text must be {MAX_FRONT_LENGTH} characters or less
4. Back text must be {MAX_BACK_LENGTH} characters or less
5. Focus on key concepts, facts, definitions, or important information
6. Make flashcards concise and clear
7. Each flashcard should be independent and testable
8. Return ONLY valid JSON in this exact format:
   {{
     "flashcards": [
       {{ "front": "question or prompt", "back": "answer or explanation" }},
       ...
     ]
   }}
9. Do not include any text before or after the JSON
10. Ensure all flashcards are valid and useful for studying"""


def build_user_prompt(text: str) -> str:
    return f"Generate flashcards from the following text:\n\n{text}"


FLASHCARD_RESPONSE_FORMAT = ResponseFormat(
    type="json_schema",
    json_schema=JsonSchemaSpec(
        name="FlashcardProposals",
        strict=True,
        schema={
            "type": "object",
            "properties": {
                "flashcards": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "front": {"type": "string"},
                            "back": {"type": "string"},
                        },
                        "required": ["front", "back"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["flashcards"],
            "additionalProperties": False,
        },
    ),
)
