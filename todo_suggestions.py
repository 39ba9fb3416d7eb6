import json
import logging
import re
from typing import Optional, Any, List

import google.generativeai as genai

from todo_service import UpstreamError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MODEL_NAME = 'gemini-2.5-flash'
SUGGESTION_COUNT = 3
FALLBACK_SUGGESTIONS = ['Could not parse suggestions. Try again.']

_FENCE_RE = re.compile(r'^```[a-zA-Z]*\s*|\s*```$')


def build_model(api_key: Optional[str], model_name: str = DEFAULT_MODEL_NAME):
    if not api_key:
        logger.warning('GEMINI_API_KEY not set; task suggestions are disabled.')
        return None
    genai.configure(api_key=api_key)
    try:
        return genai.GenerativeModel(model_name)
    except Exception as exc:  # pylint: disable=broad-except
        logger.warning('Gemini model unavailable: %s', exc)
        return None


def build_prompt(todo_names: List[str]) -> str:
    return (
        f"Based on the following list of tasks, suggest {SUGGESTION_COUNT} new and distinct todo items. "
        "The suggestions should be varied and realistic, potentially related to personal life, "
        "work, hobbies, or self-improvement.\n"
        "Format the output as a JSON array of strings, like this:\n"
        '["Suggestion 1", "Suggestion 2", "Suggestion 3"]\n\n'
        f"Current tasks: {', '.join(todo_names)}"
    )


def response_text(response: Any) -> str:
    try:
        text = getattr(response, 'text', None) or ''
    except ValueError:
        # .text raises when the reply has no valid part, e.g. a safety block
        text = ''
    if not text and hasattr(response, 'candidates'):
        for candidate in response.candidates:
            if candidate.content and candidate.content.parts:
                text = ''.join(part.text for part in candidate.content.parts if getattr(part, 'text', None))
                if text:
                    break
    return text


def parse_suggestions(text: str) -> List[str]:
    cleaned = _FENCE_RE.sub('', (text or '').strip()).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning('Failed to decode suggestion response: %s', text)
        return list(FALLBACK_SUGGESTIONS)
    if not isinstance(payload, list) or not payload or not all(isinstance(item, str) for item in payload):
        logger.warning('Suggestion response is not an array of strings: %s', text)
        return list(FALLBACK_SUGGESTIONS)
    return payload[:SUGGESTION_COUNT]


class SuggestionRelay:
    """Forwards task names to Gemini and relays back suggested task names."""

    def __init__(self, model=None) -> None:
        self.model = model

    def suggest(self, todos: Any) -> List[str]:
        if not isinstance(todos, list):
            raise ValidationError('todos', 'Invalid input: todos must be an array')
        if self.model is None:
            raise UpstreamError('Gemini API Key is invalid or missing.')

        prompt = build_prompt([str(name) for name in todos])
        try:
            response = self.model.generate_content(prompt)
            text = response_text(response)
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception('Error getting Gemini suggestions: %s', exc)
            if 'API key' in str(exc):
                raise UpstreamError('Gemini API Key is invalid or missing.') from exc
            raise UpstreamError('Failed to get todo suggestions from AI.') from exc

        return parse_suggestions(text)
