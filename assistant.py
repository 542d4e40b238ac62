"""
Library assistant chat.

The model answers in free text, but it can ask for library data by
replying with a command tag such as ``[BOOK_SEARCH:dragons]``.  The tag is
run against the catalog and the result replaces the model's reply.
Recommendations are shared with the recommendations page.
"""
import logging
import re
from typing import List, Optional, Tuple

import lending
from ai import AIClient, is_placeholder_title
from backend import BackendClient, NotAuthenticated, RemoteCallFailure

logger = logging.getLogger(__name__)

MAX_HISTORY = 20
MAX_MESSAGE_LENGTH = 2000
MAX_RESULTS = 5
PREVIEW = 100
# How many of the user's borrowed books feed a recommendation prompt.
RECENT_BORROWED = 10
TOP_BOOKS = 50

GREETING = ("Hello! I'm the library assistant. I can help you find books and "
            "resources, summarize a book, suggest what to read next and explain "
            "how borrowing works. How can I help you today?")

SYSTEM_PROMPT = """You are a helpful assistant for a library management system. You help library members with:

- Finding and recommending books based on their interests, genres or authors
- Explaining how borrowing, returning and renewing books works
- Finding digital resources (PDFs) in the library
- Reading suggestions and general questions about the library

When you need data from the library, reply with ONLY one of these commands and nothing else:
1. [BOOK_SEARCH:topic or title] when the user wants to find books about a topic or a specific book
2. [BOOK_SUMMARY:book title] when the user asks for a summary of a book
3. [BOOK_RECOMMENDATIONS] when the user asks for recommendations without naming a topic
4. [RESOURCE_SEARCH:topic] when the user wants PDFs or other digital resources

How the library works:
- Books are issued from the Books page or the wishlist when a copy is available
- Borrowed books and their due dates are listed under "My Transactions"
- A book can be renewed from the Books page while it is issued to the user
- Books are returned from the same page, and the user can rate the book when returning it
- Late returns cost a fee for each day past the due date
- Digital resources can be read from the Resources page without borrowing

Be friendly and concise. If you do not know something about the library's collection or policies, say so and suggest asking a librarian. Never recommend books or resources whose titles look like test or placeholder entries (for example titles containing "test", "demo", "sample" or "placeholder")."""

COMMAND_RE = re.compile(
    r'\[(BOOK_SEARCH|BOOK_SUMMARY|BOOK_RECOMMENDATIONS|RESOURCE_SEARCH)(?::([^\]]*))?\]')


def clean_history(raw) -> List[dict]:
    """Keep the well-formed user/assistant turns, most recent last."""
    if not isinstance(raw, list):
        return []
    turns = []
    for turn in raw:
        if not isinstance(turn, dict):
            continue
        role, content = turn.get('role'), turn.get('content')
        if role not in ('user', 'assistant') or not isinstance(content, str) or not content.strip():
            continue
        turns.append({'role': role, 'content': content[:MAX_MESSAGE_LENGTH]})
    return turns[-MAX_HISTORY:]


def parse_command(reply: str) -> Optional[Tuple[str, str]]:
    match = COMMAND_RE.search(reply or '')
    if not match:
        return None
    return match.group(1), (match.group(2) or '').strip()


def _matches(record: dict, query: str, fields) -> bool:
    query = query.lower()
    return any(query in (record.get(field) or '').lower() for field in fields)


def search_books(books: List[dict], query: str) -> List[dict]:
    return [b for b in books
            if not is_placeholder_title(b.get('title') or '')
            and _matches(b, query, ('title', 'author', 'description', 'genre'))][:MAX_RESULTS]


def search_resources(resources: List[dict], query: str) -> List[dict]:
    return [r for r in resources
            if not is_placeholder_title(r.get('name') or '')
            and _matches(r, query, ('name', 'description'))][:MAX_RESULTS]


def _preview(text: Optional[str]) -> str:
    return f'{text[:PREVIEW]}...' if text else 'No description available'


def recommend_for_user(backend: BackendClient, ai_client: AIClient, user_id) -> Optional[List[dict]]:
    """
    Recommendations from the user's recently issued books.

    Returns None when the user has not borrowed anything yet.
    """
    transactions = lending.parse_transactions(backend.fetch_user_transactions(user_id))
    recent_ids = list(dict.fromkeys(
        t.book_id for t in transactions if t.action == lending.ISSUE))[:RECENT_BORROWED]
    if not recent_ids:
        return None
    borrowed = list(backend.fetch_books_by_ids(recent_ids).values())
    top_books = backend.fetch_books()[:TOP_BOOKS]
    return ai_client.generate_book_recommendations(borrowed, top_books)


class LibraryAssistant:
    """One user's conversation with the assistant."""

    def __init__(self, ai_client: AIClient, backend: BackendClient, user_id):
        self.ai = ai_client
        self.backend = backend
        self.user_id = user_id

    def reply(self, history: List[dict], message: str) -> str:
        """
        Answer ``message``, running any command the model asks for.

        Raises AIError and RemoteCallFailure.
        """
        text = self.ai.chat(history, message, system=SYSTEM_PROMPT)
        command = parse_command(text)
        if command is None:
            return text
        name, argument = command
        logger.info('Assistant command %s(%r) for %s', name, argument, self.user_id)
        handler = getattr(self, f'_{name.lower()}')
        return handler(argument)

    def _availability(self, book_id):
        try:
            return self.backend.check_availability(book_id)
        except NotAuthenticated:
            raise
        except RemoteCallFailure as exc:
            logger.warning('Availability unknown for book %s: %s', book_id, exc)
            return None

    def _book_search(self, query: str) -> str:
        if not query:
            return 'What would you like me to search for?'
        found = search_books(self.backend.fetch_books(), query)
        if not found:
            return (f'I couldn\'t find any books related to "{query}" in our library. '
                    'Would you like to try a different topic?')
        lines = []
        for number, book in enumerate(found, 1):
            available = self._availability(book['id'])
            if available is None:
                status = 'Availability unknown'
            else:
                status = 'Available' if available else 'Currently borrowed'
            lines.append(f'{number}. {book.get("title")} by {book.get("author") or "Unknown"}\n'
                         f'   {status}\n   {_preview(book.get("description"))}')
        return (f'I found {len(found)} book(s) related to "{query}":\n\n' + '\n\n'.join(lines)
                + '\n\nWould you like help borrowing any of these books?')

    def _book_summary(self, title: str) -> str:
        if not title:
            return 'Which book would you like a summary of?'
        wanted = title.lower()
        books = self.backend.fetch_books()
        book = (next((b for b in books if (b.get('title') or '').lower() == wanted), None)
                or next((b for b in books if wanted in (b.get('title') or '').lower()), None)
                or {'title': title})
        summary = self.ai.generate_book_summary(book['title'], book.get('author'), book.get('description'))
        return f'Here\'s a summary of "{book["title"]}":\n\n{summary}'

    def _book_recommendations(self, _argument: str) -> str:
        picks = recommend_for_user(self.backend, self.ai, self.user_id)
        if not picks:
            return ("I'd be happy to recommend some books! I don't know your reading "
                    "preferences yet, so try borrowing a few books first and ask me again.")
        lines = [f'{number}. {pick["title"]} by {pick["author"]}\n'
                 f'   Why you\'ll like it: {pick["reason"]}\n'
                 f'   Relevance: {pick["relevanceScore"]}/10'
                 for number, pick in enumerate(picks, 1)]
        return 'Based on your reading history, here are some books for you:\n\n' + '\n\n'.join(lines)

    def _resource_search(self, query: str) -> str:
        if not query:
            return 'What kind of resource are you looking for?'
        found = search_resources(self.backend.fetch_resources(), query)
        if not found:
            return (f'I couldn\'t find any resources related to "{query}". '
                    'Would you like to try a different topic?')
        lines = [f'{number}. {resource.get("name")}\n   {_preview(resource.get("description"))}'
                 for number, resource in enumerate(found, 1)]
        return (f'I found {len(found)} resource(s) related to "{query}":\n\n' + '\n\n'.join(lines)
                + '\n\nYou can read them from the Resources page.')
