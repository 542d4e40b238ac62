"""
HTTP client for the hosted backend.

The backend exposes PostgREST-style tables under ``/rest/v1``, stored
procedures under ``/rest/v1/rpc``, object storage under ``/storage/v1`` and
password auth under ``/auth/v1``.  Every lending rule lives in the stored
procedures; this client only calls them by name.

All failures surface as ``RemoteCallFailure`` so route handlers have a
single exception to catch.
"""
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional
from urllib.parse import quote

import requests

from roles import Role

logger = logging.getLogger(__name__)


class RemoteCallFailure(Exception):
    """A backend call failed (network error, HTTP error or bad payload)."""

    def __init__(self, operation: str, message: str = '', status_code: Optional[int] = None):
        self.operation = operation
        self.message = message or 'unknown error'
        self.status_code = status_code
        super().__init__(f'{operation} failed: {self.message}')


class NotAuthenticated(RemoteCallFailure):
    """The access token is missing, expired or rejected."""


def _error_message(resp) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return (resp.text or '').strip() or f'HTTP {resp.status_code}'
    if isinstance(payload, dict):
        for key in ('message', 'error_description', 'msg', 'error'):
            if payload.get(key):
                return str(payload[key])
    return f'HTTP {resp.status_code}'


def _in_filter(values: Iterable) -> str:
    quoted = ','.join(f'"{v}"' for v in values)
    return f'in.({quoted})'


class BackendClient:
    """
    Thin wrapper over ``requests`` for one signed-in (or anonymous) user.

    ``access_token`` is the user's session token from ``sign_in``; without
    it requests run with the public key and row-level security applies as
    for an anonymous visitor.

    Pages look up availability and ratings from worker threads, so each
    thread gets its own ``requests.Session``.  A ``session`` passed in is
    used as-is for every call.
    """

    def __init__(self, base_url: str, api_key: str, access_token: Optional[str] = None,
                 timeout: float = 10, session: Optional[requests.Session] = None,
                 storage_bucket: str = 'books', cover_bucket: str = 'images'):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.access_token = access_token
        self.timeout = timeout
        self._session = session
        self._local = threading.local()
        self.storage_bucket = storage_bucket
        self.cover_bucket = cover_bucket

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        if not hasattr(self._local, 'session'):
            self._local.session = requests.Session()
        return self._local.session

    # -- plumbing ---------------------------------------------------------

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'apikey': self.api_key,
            'Authorization': f'Bearer {self.access_token or self.api_key}',
        }
        if extra:
            headers.update(extra)
        return headers

    def _request(self, operation: str, method: str, path: str, headers=None, **kwargs):
        url = f'{self.base_url}{path}'
        try:
            resp = self.session.request(method, url, headers=self._headers(headers),
                                        timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error('%s: %s %s raised %s', operation, method, path, exc)
            raise RemoteCallFailure(operation, str(exc)) from exc
        if resp.status_code == 401:
            raise NotAuthenticated(operation, _error_message(resp), resp.status_code)
        if resp.status_code >= 400:
            message = _error_message(resp)
            logger.error('%s: %s %s returned %s: %s', operation, method, path,
                         resp.status_code, message)
            raise RemoteCallFailure(operation, message, resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as exc:
            raise RemoteCallFailure(operation, 'invalid JSON in response', resp.status_code) from exc

    def _select(self, operation: str, table: str, params: Dict[str, str]) -> List[dict]:
        params = {'select': '*', **params}
        return self._request(operation, 'GET', f'/rest/v1/{table}', params=params) or []

    def _insert(self, operation: str, table: str, rows) -> List[dict]:
        return self._request(operation, 'POST', f'/rest/v1/{table}', json=rows,
                             headers={'Prefer': 'return=representation'}) or []

    def rpc(self, name: str, params: Optional[dict] = None):
        return self._request(name, 'POST', f'/rest/v1/rpc/{name}', json=params or {})

    # -- auth -------------------------------------------------------------

    def sign_in(self, email: str, password: str) -> dict:
        """Exchange credentials for a session; the client keeps the token."""
        try:
            session = self._request('sign_in', 'POST', '/auth/v1/token',
                                    params={'grant_type': 'password'},
                                    json={'email': email, 'password': password})
        except NotAuthenticated:
            raise
        except RemoteCallFailure as exc:
            # Wrong credentials come back as 400 invalid_grant.
            if exc.status_code == 400:
                raise NotAuthenticated('sign_in', exc.message, 400) from exc
            raise
        if not session or not session.get('access_token'):
            raise NotAuthenticated('sign_in', 'no access token returned')
        self.access_token = session['access_token']
        return session

    def sign_up(self, email: str, password: str) -> dict:
        return self._request('sign_up', 'POST', '/auth/v1/signup',
                             json={'email': email, 'password': password}) or {}

    def request_password_reset(self, email: str, redirect_to: Optional[str] = None) -> None:
        params = {'redirect_to': redirect_to} if redirect_to else None
        self._request('request_password_reset', 'POST', '/auth/v1/recover',
                      params=params, json={'email': email})

    def fetch_user_role(self, user_id) -> Role:
        """
        Look up the user's role in ``profiles``.

        A missing profile, or a failed lookup, means student.
        """
        try:
            rows = self._select('fetch_user_role', 'profiles',
                                {'select': 'role', 'id': f'eq.{user_id}', 'limit': '1'})
        except RemoteCallFailure as exc:
            logger.warning('Role lookup for %s failed, assuming student: %s', user_id, exc)
            return Role.STUDENT
        if not rows:
            return Role.STUDENT
        return Role.parse(rows[0].get('role'))

    # -- lending ----------------------------------------------------------

    def fetch_user_transactions(self, user_id) -> List[dict]:
        """The user's transactions, most recent first."""
        return self._select('fetch_user_transactions', 'book_transactions', {
            'user_id': f'eq.{user_id}',
            'order': 'transaction_date.desc',
        })

    def check_availability(self, book_id) -> bool:
        return bool(self.rpc('is_book_available', {'book_uuid': book_id}))

    def issue_book(self, book_id, user_id) -> bool:
        return bool(self.rpc('issue_book', {'book_uuid': book_id, 'user_uuid': user_id}))

    def return_book(self, book_id, user_id) -> bool:
        return bool(self.rpc('return_book', {'book_uuid': book_id, 'user_uuid': user_id}))

    def renew_book(self, book_id, user_id) -> bool:
        return bool(self.rpc('renew_book', {'book_uuid': book_id, 'user_uuid': user_id}))

    def fetch_all_transactions(self) -> List[dict]:
        """
        Every user's transactions, most recent first.

        Staff read through the ``get_all_transactions`` procedure, which
        bypasses row-level security; if it is missing or errors, fall back
        to querying the table directly.
        """
        try:
            rows = self.rpc('get_all_transactions')
            if rows is not None:
                return rows
        except RemoteCallFailure as exc:
            logger.warning('get_all_transactions failed, querying table directly: %s', exc)
        return self._select('fetch_all_transactions', 'book_transactions',
                            {'order': 'transaction_date.desc'})

    # -- catalog ----------------------------------------------------------

    def fetch_books(self) -> List[dict]:
        return self._select('fetch_books', 'books', {'order': 'created_at.desc'})

    def fetch_book(self, book_id) -> Optional[dict]:
        rows = self._select('fetch_book', 'books', {'id': f'eq.{book_id}', 'limit': '1'})
        return rows[0] if rows else None

    def fetch_books_by_ids(self, book_ids: Iterable) -> Dict[str, dict]:
        book_ids = list(dict.fromkeys(book_ids))
        if not book_ids:
            return {}
        rows = self._select('fetch_books_by_ids', 'books', {
            'select': 'id,title,author,description',
            'id': _in_filter(book_ids),
        })
        return {str(row['id']): row for row in rows}

    def create_book(self, fields: dict) -> dict:
        rows = self._insert('create_book', 'books', [fields])
        return rows[0] if rows else {}

    def update_book(self, book_id, fields: dict) -> dict:
        rows = self._request('update_book', 'PATCH', '/rest/v1/books',
                             params={'id': f'eq.{book_id}'}, json=fields,
                             headers={'Prefer': 'return=representation'}) or []
        return rows[0] if rows else {}

    def delete_book(self, book_id) -> None:
        self._request('delete_book', 'DELETE', '/rest/v1/books', params={'id': f'eq.{book_id}'})

    def fetch_ratings(self, book_id) -> List[int]:
        rows = self._select('fetch_ratings', 'book_ratings',
                            {'select': 'rating', 'book_id': f'eq.{book_id}'})
        return [row['rating'] for row in rows if row.get('rating') is not None]

    def rate_book(self, book_id, user_id, rating: int, comment: Optional[str] = None) -> None:
        self._insert('rate_book', 'book_ratings', [{
            'book_id': book_id,
            'user_id': user_id,
            'rating': rating,
            'comment': comment or None,
        }])

    # -- profiles ---------------------------------------------------------

    def fetch_profiles(self, user_ids: Iterable) -> Dict[str, dict]:
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return {}
        rows = self._select('fetch_profiles', 'profiles',
                            {'select': 'id,role', 'id': _in_filter(user_ids)})
        return {str(row['id']): row for row in rows}

    def fetch_users_with_profiles(self) -> List[dict]:
        return self.rpc('get_users_with_profiles') or []

    def update_user_role(self, user_id, role: Role) -> None:
        self.rpc('update_user_role', {'target_user_id': user_id, 'new_role': Role.parse(role).value})

    # -- bookmarks --------------------------------------------------------

    def add_bookmark(self, user_id, book_id) -> dict:
        rows = self._insert('add_bookmark', 'bookmarks', [{'user_id': user_id, 'book_id': book_id}])
        return rows[0] if rows else {}

    def remove_bookmark(self, user_id, book_id) -> None:
        self._request('remove_bookmark', 'DELETE', '/rest/v1/bookmarks',
                      params={'user_id': f'eq.{user_id}', 'book_id': f'eq.{book_id}'})

    def is_bookmarked(self, user_id, book_id) -> bool:
        rows = self._select('is_bookmarked', 'bookmarks', {
            'select': 'id',
            'user_id': f'eq.{user_id}',
            'book_id': f'eq.{book_id}',
            'limit': '1',
        })
        return bool(rows)

    def fetch_bookmarks(self, user_id) -> List[dict]:
        """Bookmarked books, newest bookmark first, flattened with bookmark info."""
        rows = self._select('fetch_bookmarks', 'bookmarks', {
            'select': 'id,created_at,books(*)',
            'user_id': f'eq.{user_id}',
            'order': 'created_at.desc',
        })
        books = []
        for row in rows:
            book = row.get('books')
            if not book:
                continue
            books.append({**book, 'bookmark_id': row['id'], 'bookmarked_at': row.get('created_at')})
        return books

    def bookmark_status(self, user_id, book_ids: Iterable) -> Dict[str, str]:
        book_ids = list(book_ids)
        if not book_ids:
            return {}
        rows = self._select('bookmark_status', 'bookmarks', {
            'select': 'book_id,id',
            'user_id': f'eq.{user_id}',
            'book_id': _in_filter(book_ids),
        })
        return {str(row['book_id']): row['id'] for row in rows}

    # -- resources (hosted PDFs) --------------------------------------------

    def fetch_resources(self) -> List[dict]:
        return self._select('fetch_resources', 'documents', {'order': 'created_at.desc'})

    def fetch_resource(self, resource_id) -> Optional[dict]:
        rows = self._select('fetch_resource', 'documents', {'id': f'eq.{resource_id}', 'limit': '1'})
        return rows[0] if rows else None

    def upload_object(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        self._request('upload_object', 'POST', f'/storage/v1/object/{bucket}/{quote(path)}',
                      data=data, headers={
                          'Content-Type': content_type,
                          'Cache-Control': '3600',
                          'x-upsert': 'false',
                      })

    def remove_object(self, bucket: str, path: str) -> None:
        self._request('remove_object', 'DELETE', f'/storage/v1/object/{bucket}',
                      json={'prefixes': [path]})

    def public_url(self, bucket: str, path: str) -> str:
        return f'{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}'

    def upload_cover(self, data: bytes, filename: Optional[str], folder: str,
                     stamp: Optional[int] = None) -> str:
        """Store a cover image in the public cover bucket and return its URL."""
        ext = (filename or 'cover.png').rsplit('.', 1)[-1].lower()
        if stamp is None:
            stamp = int(time.time() * 1000)
        path = f'{folder}/cover-{stamp}.{ext}'
        content_type = 'image/jpeg' if ext == 'jpg' else f'image/{ext}'
        self.upload_object(self.cover_bucket, path, data, content_type)
        return self.public_url(self.cover_bucket, path)

    def signed_url(self, path: str, expires_in: int = 300, bucket: Optional[str] = None) -> str:
        bucket = bucket or self.storage_bucket
        payload = self._request('signed_url', 'POST',
                                f'/storage/v1/object/sign/{bucket}/{quote(path)}',
                                json={'expiresIn': expires_in}) or {}
        signed = payload.get('signedURL') or payload.get('signedUrl')
        if not signed:
            raise RemoteCallFailure('signed_url', 'no signed URL returned')
        return f'{self.base_url}/storage/v1{signed}'

    def upload_resource(self, name: str, data: bytes, filename: str, user_id=None,
                        description: Optional[str] = None, flipbook_url: Optional[str] = None,
                        cover: Optional[bytes] = None, cover_filename: Optional[str] = None,
                        stamp: Optional[int] = None) -> dict:
        """
        Store a PDF and record it in ``documents``.

        The uploaded object is removed again if the metadata insert fails,
        so storage never holds files the catalog cannot reach.
        """
        ext = filename.rsplit('.', 1)[-1].lower() if '.' in filename else 'pdf'
        stored_name = f'{stamp}.{ext}' if stamp is not None else filename
        path = f'pdfs/{stored_name}'
        self.upload_object(self.storage_bucket, path, data, 'application/pdf')

        cover_url = None
        if cover:
            cover_url = self.upload_cover(cover, cover_filename, 'document-covers', stamp)

        try:
            rows = self._insert('upload_resource', 'documents', [{
                'name': name.strip(),
                'filename': stored_name,
                'filepath': path,
                'size': len(data),
                'flipbook_url': (flipbook_url or '').strip() or None,
                'cover_image_url': cover_url,
                'description': (description or '').strip() or None,
                'uploaded_by': user_id,
            }])
        except RemoteCallFailure:
            self.remove_object(self.storage_bucket, path)
            raise
        return rows[0] if rows else {}

    def update_resource(self, resource_id, name: str, flipbook_url: Optional[str] = None,
                        description: Optional[str] = None, cover: Optional[bytes] = None,
                        cover_filename: Optional[str] = None, stamp: Optional[int] = None) -> dict:
        """Rename a resource and optionally replace its cover; the PDF stays put."""
        fields = {
            'name': name.strip(),
            'flipbook_url': (flipbook_url or '').strip() or None,
        }
        if description is not None:
            fields['description'] = description.strip() or None
        if cover:
            fields['cover_image_url'] = self.upload_cover(cover, cover_filename, 'document-covers', stamp)
        rows = self._request('update_resource', 'PATCH', '/rest/v1/documents',
                             params={'id': f'eq.{resource_id}'}, json=fields,
                             headers={'Prefer': 'return=representation'}) or []
        return rows[0] if rows else {}

    def delete_resource(self, resource_id) -> None:
        resource = self.fetch_resource(resource_id)
        if resource and resource.get('filepath'):
            self.remove_object(self.storage_bucket, resource['filepath'])
        self._request('delete_resource', 'DELETE', '/rest/v1/documents',
                      params={'id': f'eq.{resource_id}'})
