"""
Generated catalog text and artwork.

Talks to an OpenAI-compatible API (chat completions and image generation)
over plain HTTP.  Every failure is raised as ``AIError`` with a message
that can be shown to the user as-is.
"""
import base64
import binascii
import json
import logging
import re
from typing import List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

PLACEHOLDER_WORDS = ('test', 'demo', 'sample', 'example', 'dummy', 'temp',
                     'temporary', 'placeholder')
MAX_TOP_BOOKS = 20
DESCRIPTION_PREVIEW = 100


class AIError(Exception):
    """Generation failed; ``str(exc)`` is safe to show to the user."""


def _book_line(book: dict) -> str:
    description = book.get('description')
    preview = f'{description[:DESCRIPTION_PREVIEW]}...' if description else 'No description'
    return f'- "{book.get("title", "")}" by {book.get("author") or "Unknown"} ({preview})'


def description_prompt(title: str, author: Optional[str]) -> str:
    return f"""Generate a compelling and informative book description for the following book:

Title: {title}
Author: {author or "Unknown"}

Please provide a description that includes:
- A brief overview of what the book is about
- The main themes or topics covered
- Why someone might want to read it
- Keep it between 100-200 words

Make it engaging and suitable for a library catalog. Do not use any markdown formatting like **bold** or *italic* text. Write in plain text only."""


def summary_prompt(title: str, author: Optional[str], description: Optional[str] = None) -> str:
    context = f'Additional context: {description}' if description else ''
    return f"""Generate a comprehensive and engaging summary of the book "{title}" by {author or "Unknown"}.

Please provide:
1. **Overview**: A brief 2-3 sentence overview of what the book is about
2. **Main Themes**: The primary themes and topics covered
3. **Key Takeaways**: 3-5 main lessons or insights from the book
4. **Target Audience**: Who would benefit most from reading this book
5. **Why Read It**: Why someone should read this book

{context}

Keep the total summary between 300-500 words. Make it informative, engaging, and suitable for someone considering whether to read the book. Use markdown formatting for better readability."""


def recommendations_prompt(borrowed: List[dict], top_books: List[dict]) -> str:
    borrowed_text = '\n'.join(_book_line(b) for b in borrowed)
    top_text = '\n'.join(_book_line(b) for b in top_books[:MAX_TOP_BOOKS])
    return f"""Based on a user's borrowing history and the top books in our library, recommend 5-8 books they might enjoy.

User's recently borrowed books:
{borrowed_text}

Do not recommend any book from the borrowing history list above.

Top books in our library:
{top_text}

Analyze the user's reading preferences based on their borrowing history and recommend books from the top books list that match their interests. Do not recommend books with titles containing words like {", ".join(repr(w) for w in PLACEHOLDER_WORDS)}.

For each recommendation, provide:

1. Book title and author
2. Brief reason why this book matches their interests
3. A relevance score (1-10, where 10 is perfect match)

Return the response as a valid JSON array of objects with this structure:
[
  {{
    "title": "Book Title",
    "author": "Author Name",
    "reason": "Why this book matches their interests",
    "relevanceScore": 8
  }}
]

Only return the JSON array, no additional text."""


def strip_code_fences(text: str) -> str:
    text = re.sub(r'```(?:json)?\s*', '', text)
    return text.strip()


def is_placeholder_title(title: str) -> bool:
    words = re.findall(r'[a-z]+', title.lower())
    return any(word in PLACEHOLDER_WORDS for word in words)


def parse_recommendations(text: str, borrowed: List[dict]) -> List[dict]:
    """
    Turn the model's reply into a clean list of recommendations.

    Models do not reliably follow the instructions in the prompt, so
    borrowed titles and placeholder-looking titles are filtered here too.
    """
    try:
        items = json.loads(strip_code_fences(text))
    except ValueError as exc:
        raise AIError('Failed to parse AI recommendations. Please try again.') from exc
    if not isinstance(items, list):
        raise AIError('Failed to parse AI recommendations. Please try again.')

    borrowed_titles = {(b.get('title') or '').strip().lower() for b in borrowed}
    recommendations = []
    for item in items:
        if not isinstance(item, dict) or not item.get('title'):
            continue
        title = str(item['title']).strip()
        if title.lower() in borrowed_titles or is_placeholder_title(title):
            continue
        try:
            score = int(item.get('relevanceScore', 0))
        except (TypeError, ValueError):
            score = 0
        recommendations.append({
            'title': title,
            'author': item.get('author') or 'Unknown',
            'reason': item.get('reason', ''),
            'relevanceScore': score,
        })
    recommendations.sort(key=lambda r: r['relevanceScore'], reverse=True)
    return recommendations


def decode_data_url(url: str) -> Tuple[str, bytes]:
    """Split a base64 ``data:`` URL into its content type and bytes."""
    match = re.match(r'data:([\w.+-]+/[\w.+-]+);base64,(.*)\Z', url or '', re.S)
    if not match:
        raise ValueError('not a base64 data URL')
    try:
        return match.group(1), base64.b64decode(match.group(2), validate=True)
    except binascii.Error as exc:
        raise ValueError('invalid base64 in data URL') from exc


def _http_error_message(status_code: int) -> str:
    if status_code == 429:
        return ('API quota exceeded. Please wait a few minutes before trying again.')
    if status_code in (401, 403):
        return 'API authentication failed. Please check the AI API key.'
    if status_code == 404:
        return 'Generation model not available. Please check the AI configuration.'
    return 'The AI service returned an error. Please try again later.'


class AIClient:
    """Client for an OpenAI-compatible generation API."""

    def __init__(self, base_url: str, api_key: str, text_model: str, image_model: str,
                 timeout: float = 60, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.text_model = text_model
        self.image_model = image_model
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, path: str, payload: dict) -> dict:
        if not self.api_key:
            raise AIError('AI features are not configured.')
        url = f'{self.base_url}{path}'
        headers = {
            'Authorization': f'Bearer {self.api_key}',
            'Content-Type': 'application/json',
        }
        try:
            resp = self.session.request('POST', url, headers=headers, json=payload,
                                        timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error('AI request to %s failed: %s', url, exc)
            raise AIError('Could not reach the AI service. Please try again later.') from exc
        if resp.status_code >= 400:
            logger.error('AI request to %s returned %s: %s', url, resp.status_code, resp.text)
            raise AIError(_http_error_message(resp.status_code))
        try:
            return resp.json()
        except ValueError as exc:
            raise AIError('The AI service returned an unreadable response.') from exc

    def _chat(self, messages: List[dict]) -> str:
        result = self._post('/chat/completions', {
            'model': self.text_model,
            'messages': messages,
        })
        try:
            return result['choices'][0]['message']['content'].strip()
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise AIError('The AI service returned an empty response.') from exc

    def complete(self, prompt: str) -> str:
        return self._chat([{'role': 'user', 'content': prompt}])

    def chat(self, history: List[dict], message: str, system: Optional[str] = None) -> str:
        """
        Continue a conversation.

        ``history`` holds earlier ``{'role': 'user'|'assistant', 'content'}``
        turns, oldest first; ``message`` is the new user turn.
        """
        messages = [{'role': 'system', 'content': system}] if system else []
        messages.extend({'role': turn['role'], 'content': turn['content']} for turn in history)
        messages.append({'role': 'user', 'content': message})
        return self._chat(messages)

    def generate_book_description(self, title: str, author: Optional[str] = None) -> str:
        return self.complete(description_prompt(title, author))

    def generate_book_summary(self, title: str, author: Optional[str] = None,
                              description: Optional[str] = None) -> str:
        return self.complete(summary_prompt(title, author, description))

    def generate_book_recommendations(self, borrowed: List[dict], top_books: List[dict]) -> List[dict]:
        text = self.complete(recommendations_prompt(borrowed, top_books))
        return parse_recommendations(text, borrowed)

    def generate_book_cover(self, title: str, author: Optional[str] = None) -> str:
        """Generate a cover and return it as a ``data:`` URL."""
        prompt = (f'Professional book cover for "{title}" by {author or "Unknown Author"}. '
                  'High quality, modern design, readable text, attractive colors.')
        result = self._post('/images/generations', {
            'model': self.image_model,
            'prompt': prompt,
            'n': 1,
            'size': '1024x1792',
            'response_format': 'url',
            'quality': 'standard',
        })
        data = result.get('data') if isinstance(result, dict) else None
        if not data or not data[0].get('url'):
            raise AIError('No image was returned. The prompt may have been filtered.')
        try:
            image = self.session.request('GET', data[0]['url'], timeout=self.timeout)
        except requests.RequestException as exc:
            raise AIError('Failed to fetch generated image.') from exc
        if image.status_code >= 400:
            raise AIError('Failed to fetch generated image.')
        content_type = image.headers.get('Content-Type', 'image/png').split(';')[0]
        encoded = base64.b64encode(image.content).decode('ascii')
        return f'data:{content_type};base64,{encoded}'
