"""
Library portal: a Flask front end for a hosted library backend.

Members browse the catalog, issue, return and renew books, keep a
wishlist, read hosted PDFs, chat with the library assistant and get
generated summaries and recommendations.  Librarians and admins
additionally manage the catalog and resources, see every transaction and
(admins only) assign roles.

The backend owns every piece of durable state and every lending rule.
Issue, return and renew are single stored-procedure calls; this app only
decides which buttons to show, using the user's transaction log and the
backend's availability flag (see ``lending.py``).
"""
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor

from flask import (Flask, flash, g, jsonify, make_response, redirect,
                   render_template, request, session, url_for)
from flask_login import (LoginManager, current_user, login_required,
                         login_user, logout_user)
from flask_wtf.csrf import CSRFError, CSRFProtect

import exports
import lending
from accounts import SESSION_KEY, SessionUser
from ai import AIClient, AIError, decode_data_url
from assistant import (GREETING, MAX_MESSAGE_LENGTH, LibraryAssistant,
                       clean_history, recommend_for_user)
from backend import BackendClient, NotAuthenticated, RemoteCallFailure
from config import Config
from roles import Capability, Role, can

app = Flask(__name__)
app.config.from_object(Config)
logging.basicConfig(
    level=app.config['LOG_LEVEL'],
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

csrf = CSRFProtect(app)
login_manager = LoginManager(app)
login_manager.login_view = 'login'
login_manager.login_message = 'Please log in to access this page.'
login_manager.login_message_category = 'info'

# Availability and rating lookups run in parallel per page.
LOOKUP_WORKERS = 8

BOOK_FIELDS = ('title', 'author', 'description', 'isbn', 'genre', 'publisher',
               'language', 'cover_image_url')
BOOK_INT_FIELDS = ('publication_year', 'pages', 'count')
ACTION_FILTERS = ('all',) + lending.ACTIONS
# Forms posted by full page loads rather than by the page script.
PAGE_FORMS = ('login', 'signup', 'logout')

LENDING_CALLS = {
    'issue': ('issue_book', 'Book issued successfully!', 'Book is not available'),
    'return': ('return_book', 'Book returned successfully!', 'Failed to return book'),
    'renew': ('renew_book', 'Book renewed successfully!',
              'Failed to renew book - it may not be issued to you'),
}


@login_manager.user_loader
def load_user(user_id):
    return SessionUser.from_session(session.get(SESSION_KEY), user_id)


def get_backend() -> BackendClient:
    """Backend client for this request, carrying the user's access token."""
    if 'backend' not in g:
        g.backend = BackendClient(
            app.config['BACKEND_URL'],
            app.config['BACKEND_ANON_KEY'],
            access_token=getattr(current_user, 'access_token', None),
            timeout=app.config['BACKEND_TIMEOUT'],
            storage_bucket=app.config['STORAGE_BUCKET'],
            cover_bucket=app.config['COVER_BUCKET'],
        )
    return g.backend


def get_ai() -> AIClient:
    if 'ai' not in g:
        g.ai = AIClient(
            app.config['AI_BASE_URL'],
            app.config['AI_API_KEY'],
            app.config['AI_TEXT_MODEL'],
            app.config['AI_IMAGE_MODEL'],
            timeout=app.config['AI_TIMEOUT'],
        )
    return g.ai


def current_role():
    return current_user.role if current_user.is_authenticated else None


def _wants_json() -> bool:
    return request.method != 'GET' and request.endpoint not in PAGE_FORMS


@login_manager.unauthorized_handler
def unauthorized():
    if _wants_json():
        return jsonify({'error': 'Authentication required'}), 401
    flash(login_manager.login_message, login_manager.login_message_category)
    return redirect(url_for('login', next=request.path))


def requires(capability: Capability):
    """Restrict a view to signed-in roles holding ``capability``."""
    def decorator(view):
        @functools.wraps(view)
        @login_required
        def wrapped(*args, **kwargs):
            if not can(current_role(), capability):
                if _wants_json():
                    return jsonify({'error': 'Permission denied'}), 403
                flash('You do not have access to that page.', 'error')
                return redirect(url_for('index'))
            return view(*args, **kwargs)
        return wrapped
    return decorator


@app.errorhandler(NotAuthenticated)
def handle_not_authenticated(exc):
    app.logger.info('Session rejected by backend: %s', exc)
    logout_user()
    session.clear()
    if _wants_json():
        return jsonify({'error': 'Your session has expired. Please log in again.'}), 401
    flash('Your session has expired. Please log in again.', 'warning')
    return redirect(url_for('login'))


@app.errorhandler(CSRFError)
def handle_csrf_error(exc):
    app.logger.warning('Rejected %s %s: %s', request.method, request.path, exc.description)
    if _wants_json():
        return jsonify({'error': 'Security token missing or expired. Please refresh the page and try again.'}), 400
    flash('Your form expired. Please try again.', 'warning')
    return redirect(url_for('login'))


@app.context_processor
def inject_role():
    role = current_role()
    return {
        'role': role,
        'can': lambda capability: can(role, Capability[capability]),
        'user_email': current_user.email if current_user.is_authenticated else None,
    }


def _availability(backend: BackendClient, book_id):
    """Backend availability flag, or None when it could not be fetched."""
    try:
        return backend.check_availability(book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.warning('Availability unknown for book %s: %s', book_id, exc)
        return None


def _rating_stats(backend: BackendClient, book_id):
    try:
        ratings = backend.fetch_ratings(book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.warning('Ratings unavailable for book %s: %s', book_id, exc)
        return 0, 0
    if not ratings:
        return 0, 0
    return round(sum(ratings) / len(ratings), 1), len(ratings)


def _user_transactions(backend: BackendClient, user_id):
    """
    The user's parsed transactions, or None if they could not be loaded.

    None means lending status is unknown; callers then disable every
    lending action rather than guessing.
    """
    try:
        rows = backend.fetch_user_transactions(user_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load transactions for %s: %s', user_id, exc)
        flash('Could not load your loans; lending actions are disabled for now.', 'warning')
        return None
    return lending.parse_transactions(rows)


def annotate_books(backend: BackendClient, books, transactions, with_ratings=True):
    """
    Attach availability, lending status and allowed actions to each book.

    ``transactions`` is None when the user's log failed to load, in which
    case no actions are offered.
    """
    statuses = lending.resolve_statuses(transactions) if transactions is not None else {}

    def lookup(book):
        available = _availability(backend, book['id'])
        rating = _rating_stats(backend, book['id']) if with_ratings else (0, 0)
        return available, rating

    with ThreadPoolExecutor(max_workers=LOOKUP_WORKERS) as executor:
        lookups = list(executor.map(lookup, books))

    annotated = []
    for book, (available, (average, count)) in zip(books, lookups):
        status = statuses.get(str(book['id']))
        if transactions is None:
            actions = frozenset()
        else:
            actions = lending.available_actions(status, available)
        annotated.append({
            **book,
            'available': available,
            'average_rating': average,
            'rating_count': count,
            'status': status,
            'actions': sorted(a.value for a in actions),
        })
    return annotated


def book_matches(book, query: str) -> bool:
    if not query:
        return True
    query = query.lower()
    return any(query in (book.get(field) or '').lower()
               for field in ('title', 'author', 'description', 'genre'))


def rating_matches(book, rating_filter: str) -> bool:
    if not rating_filter or rating_filter == 'all':
        return True
    if rating_filter == 'unrated':
        return not book.get('average_rating')
    try:
        return book.get('average_rating', 0) >= float(rating_filter)
    except ValueError:
        return True


def book_fields_from_form(form) -> dict:
    fields = {}
    for name in BOOK_FIELDS:
        value = form.get(name)
        if value is not None:
            fields[name] = value.strip() or None
    for name in BOOK_INT_FIELDS:
        value = form.get(name, '').strip()
        if value:
            try:
                fields[name] = int(value)
            except ValueError:
                raise ValueError(f'{name} must be a whole number') from None
    return fields


def cover_from_request():
    """
    An uploaded cover file, or a generated ``cover_data`` URL, as
    ``(bytes, filename)``; ``(None, None)`` when neither was sent.
    """
    upload = request.files.get('cover')
    if upload is not None and upload.filename:
        return upload.read(), upload.filename
    generated = request.form.get('cover_data', '').strip()
    if generated:
        content_type, data = decode_data_url(generated)
        return data, f'generated-cover.{content_type.split("/")[-1]}'
    return None, None


@app.route('/')
def index():
    return render_template('index.html')


@app.route('/login', methods=['GET', 'POST'])
def login():
    if current_user.is_authenticated:
        return redirect(url_for('books'))
    if request.method == 'GET':
        return render_template('login.html')
    email = request.form.get('email', '').strip()
    password = request.form.get('password', '')
    if not email or not password:
        flash('Email and password are required.', 'error')
        return render_template('login.html'), 400
    backend = get_backend()
    try:
        auth = backend.sign_in(email, password)
    except NotAuthenticated:
        flash('Invalid email or password.', 'error')
        return render_template('login.html'), 401
    except RemoteCallFailure as exc:
        app.logger.error('Login failed for %s: %s', email, exc)
        flash(f'Login failed: {exc.message}', 'error')
        return render_template('login.html'), 502
    account = auth.get('user') or {}
    user = SessionUser(account.get('id'), account.get('email', email),
                       backend.fetch_user_role(account.get('id')), auth['access_token'])
    session.clear()
    session[SESSION_KEY] = user.to_session()
    login_user(user)
    app.logger.info('User %s logged in as %s', user.email, user.role.value)
    next_path = request.args.get('next', '')
    if not next_path.startswith('/') or next_path.startswith('//'):
        next_path = url_for('books')
    return redirect(next_path)


@app.route('/logout', methods=['POST'])
def logout():
    logout_user()
    session.clear()
    return redirect(url_for('index'))


@app.route('/signup', methods=['POST'])
def signup():
    email = request.form.get('email', '').strip()
    password = request.form.get('password', '')
    if not email or not password:
        flash('Email and password are required.', 'error')
        return render_template('login.html'), 400
    try:
        get_backend().sign_up(email, password)
    except RemoteCallFailure as exc:
        app.logger.error('Sign-up failed for %s: %s', email, exc)
        flash(f'Sign-up failed: {exc.message}', 'error')
        return render_template('login.html'), 400 if exc.status_code == 400 else 502
    app.logger.info('New account for %s', email)
    flash('Check your email to confirm your account, then log in.', 'info')
    return redirect(url_for('login'))


@app.route('/reset-password', methods=['POST'])
def reset_password():
    email = request.form.get('email', '').strip()
    if not email:
        return jsonify({'error': 'No email provided'}), 400
    try:
        get_backend().request_password_reset(email, url_for('login', _external=True))
    except RemoteCallFailure as exc:
        app.logger.error('Password reset for %s failed: %s', email, exc)
        return jsonify({'error': f'Failed to send reset email: {exc.message}'}), 502
    return jsonify({'status': 'ok', 'message': 'Check your email for a reset link.'})


@app.route('/books')
@login_required
def books():
    """Catalog with per-book lending actions for the current user."""
    backend = get_backend()
    try:
        catalog = backend.fetch_books()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load catalog: %s', exc)
        flash(f'Could not load the catalog: {exc.message}', 'error')
        catalog = []
    query = request.args.get('q', '').strip()
    rating_filter = request.args.get('rating', 'all')
    transactions = _user_transactions(backend, current_user.id)
    annotated = annotate_books(backend, catalog, transactions)
    shown = [b for b in annotated
             if book_matches(b, query) and rating_matches(b, rating_filter)]
    try:
        bookmarks = backend.bookmark_status(current_user.id, [b['id'] for b in shown])
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.warning('Wishlist state unknown: %s', exc)
        bookmarks = {}
    for book in shown:
        book['bookmarked'] = str(book['id']) in bookmarks
    return render_template('books.html', books=shown, query=query, rating_filter=rating_filter)


@app.route('/books/<book_id>')
@login_required
def book_detail(book_id):
    backend = get_backend()
    try:
        book = backend.fetch_book(book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load book %s: %s', book_id, exc)
        flash(f'Could not load the book: {exc.message}', 'error')
        return redirect(url_for('books'))
    if book is None:
        flash('Book not found.', 'error')
        return redirect(url_for('books'))
    transactions = _user_transactions(backend, current_user.id)
    book = annotate_books(backend, [book], transactions)[0]
    try:
        book['bookmarked'] = backend.is_bookmarked(current_user.id, book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.warning('Bookmark status unknown for %s: %s', book_id, exc)
        book['bookmarked'] = False
    return render_template('book_detail.html', book=book)


@app.route('/books/<book_id>/<any(issue, return, renew):action>', methods=['POST'])
@login_required
def lending_action(book_id, action):
    """
    Issue, return or renew a book through the backend's stored procedure.

    Nothing is updated locally; the page re-reads status after success.
    A return may carry a rating, which is recorded first.
    """
    method_name, success_message, refused_message = LENDING_CALLS[action]
    backend = get_backend()
    user_id = current_user.id
    response = {}

    if action == 'return':
        rating = request.form.get('rating', type=int)
        if rating is not None:
            if not 1 <= rating <= 5:
                return jsonify({'error': 'Rating must be between 1 and 5'}), 400
            try:
                backend.rate_book(book_id, user_id, rating, request.form.get('comment', '').strip())
            except NotAuthenticated:
                raise
            except RemoteCallFailure as exc:
                app.logger.warning('Rating for book %s not saved: %s', book_id, exc)
                response['warning'] = f'Failed to submit rating: {exc.message}'

    try:
        done = getattr(backend, method_name)(book_id, user_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to %s book %s for %s: %s', action, book_id, user_id, exc)
        return jsonify({**response, 'error': f'Failed to {action} book: {exc.message}'}), 502
    if not done:
        return jsonify({**response, 'error': refused_message}), 409
    app.logger.info('User %s: %s book %s', user_id, action, book_id)
    return jsonify({**response, 'status': 'ok', 'message': success_message})


@app.route('/books/<book_id>/bookmark', methods=['POST'])
@login_required
def toggle_bookmark(book_id):
    backend = get_backend()
    user_id = current_user.id
    try:
        if backend.is_bookmarked(user_id, book_id):
            backend.remove_bookmark(user_id, book_id)
            return jsonify({'status': 'ok', 'bookmarked': False})
        backend.add_bookmark(user_id, book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Bookmark toggle for %s failed: %s', book_id, exc)
        return jsonify({'error': f'Failed to update wishlist: {exc.message}'}), 502
    return jsonify({'status': 'ok', 'bookmarked': True})


@app.route('/books', methods=['POST'])
@requires(Capability.MANAGE_BOOKS)
def add_book():
    try:
        fields = book_fields_from_form(request.form)
        cover, cover_name = cover_from_request()
    except ValueError as exc:
        return jsonify({'error': str(exc)}), 400
    if not fields.get('title'):
        return jsonify({'error': 'Title is required'}), 400
    fields.setdefault('count', 1)
    backend = get_backend()
    try:
        if cover:
            fields['cover_image_url'] = backend.upload_cover(cover, cover_name, 'book-covers')
        book = backend.create_book(fields)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to add book %r: %s', fields.get('title'), exc)
        return jsonify({'error': f'Failed to add book: {exc.message}'}), 502
    app.logger.info('Book %r added by %s', fields['title'], current_user.id)
    return jsonify({'status': 'ok', 'book': book, 'message': 'Book added successfully!'}), 201


@app.route('/books/<book_id>/edit', methods=['POST'])
@requires(Capability.MANAGE_BOOKS)
def edit_book(book_id):
    try:
        fields = book_fields_from_form(request.form)
        cover, cover_name = cover_from_request()
    except ValueError as exc:
        return jsonify({'error': str(exc)}), 400
    if 'title' in fields and not fields['title']:
        return jsonify({'error': 'Title is required'}), 400
    backend = get_backend()
    try:
        if cover:
            fields['cover_image_url'] = backend.upload_cover(cover, cover_name, 'book-covers')
        book = backend.update_book(book_id, fields)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to update book %s: %s', book_id, exc)
        return jsonify({'error': f'Failed to update book: {exc.message}'}), 502
    if not book:
        return jsonify({'error': 'Book not found'}), 404
    return jsonify({'status': 'ok', 'book': book, 'message': 'Book updated successfully!'})


@app.route('/books/<book_id>/delete', methods=['POST'])
@requires(Capability.MANAGE_BOOKS)
def delete_book(book_id):
    try:
        get_backend().delete_book(book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to delete book %s: %s', book_id, exc)
        return jsonify({'error': f'Failed to delete book: {exc.message}'}), 502
    return jsonify({'status': 'ok'})


@app.route('/wishlist')
@login_required
def wishlist():
    backend = get_backend()
    try:
        bookmarked = backend.fetch_bookmarks(current_user.id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load wishlist: %s', exc)
        flash(f'Could not load your wishlist: {exc.message}', 'error')
        bookmarked = []
    transactions = _user_transactions(backend, current_user.id)
    annotated = annotate_books(backend, bookmarked, transactions, with_ratings=False)
    return render_template('wishlist.html', books=annotated)


def _history(backend: BackendClient, rows, with_users=False):
    """Parsed transactions plus the book (and optionally user) lookups."""
    transactions = lending.parse_transactions(rows)
    books = {}
    users = {} if with_users else None
    try:
        books = backend.fetch_books_by_ids(t.book_id for t in transactions)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load book details for history: %s', exc)
        flash('Book details could not be loaded.', 'warning')
    if with_users:
        user_ids = [t.user_id for t in transactions if t.user_id]
        try:
            profiles = backend.fetch_profiles(user_ids)
        except NotAuthenticated:
            raise
        except RemoteCallFailure as exc:
            app.logger.warning('Could not load profiles for history: %s', exc)
            profiles = {}
        for user_id in dict.fromkeys(user_ids):
            profile = profiles.get(user_id) or {}
            users[user_id] = {
                'email': profile.get('email') or f'User {user_id[:8]}',
                'role': Role.parse(profile.get('role')).value,
            }
    return transactions, books, users


def _export_response(rows, title, filename, include_user):
    fmt = request.args.get('format', 'csv').lower()
    if fmt == 'pdf':
        resp = make_response(exports.transactions_pdf(rows, title, include_user))
        resp.headers['Content-Type'] = 'application/pdf'
        resp.headers['Content-Disposition'] = f'attachment; filename={filename}.pdf'
        return resp
    if fmt != 'csv':
        return jsonify({'error': f'Unsupported export format {fmt!r}'}), 400
    resp = make_response(exports.transactions_csv(rows, include_user))
    resp.headers['Content-Type'] = 'text/csv; charset=utf-8'
    resp.headers['Content-Disposition'] = f'attachment; filename={filename}.csv'
    return resp


def _my_history():
    backend = get_backend()
    rows = backend.fetch_user_transactions(current_user.id)
    return _history(backend, rows)


@app.route('/transactions')
@login_required
def my_transactions():
    try:
        transactions, books, _ = _my_history()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load transactions: %s', exc)
        flash(f'Could not load your transactions: {exc.message}', 'error')
        transactions, books = [], {}
    per_day = app.config['LATE_FEE_PER_DAY']
    rows = exports.transaction_rows(transactions, books, per_day=per_day)
    summary = lending.loan_summary(transactions, per_day=per_day)
    return render_template('transactions.html', rows=rows, summary=summary)


@app.route('/transactions/export')
@login_required
def export_my_transactions():
    try:
        transactions, books, _ = _my_history()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Export of transactions failed: %s', exc)
        return jsonify({'error': f'Failed to export transactions: {exc.message}'}), 502
    rows = exports.transaction_rows(transactions, books, per_day=app.config['LATE_FEE_PER_DAY'])
    return _export_response(rows, 'My Transaction History', 'my_transactions', include_user=False)


def _all_history():
    backend = get_backend()
    return _history(backend, backend.fetch_all_transactions(), with_users=True)


def _transaction_filters():
    query = request.args.get('q', '').strip()
    action = request.args.get('action', 'all')
    if action not in ACTION_FILTERS:
        action = 'all'
    return query, action


@app.route('/admin/transactions')
@requires(Capability.VIEW_ALL_TRANSACTIONS)
def admin_transactions():
    try:
        transactions, books, users = _all_history()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load all transactions: %s', exc)
        flash(f'Could not load transactions: {exc.message}', 'error')
        transactions, books, users = [], {}, {}
    per_day = app.config['LATE_FEE_PER_DAY']
    query, action = _transaction_filters()
    rows = exports.transaction_rows(transactions, books, users, per_day=per_day)
    shown = exports.filter_rows(rows, query, action)
    summary = lending.loan_summary(transactions, per_day=per_day)
    summary.update(lending.transaction_stats(transactions))
    return render_template('admin_transactions.html', rows=shown, summary=summary,
                           query=query, action=action, actions=ACTION_FILTERS)


@app.route('/admin/transactions/export')
@requires(Capability.VIEW_ALL_TRANSACTIONS)
def export_all_transactions():
    try:
        transactions, books, users = _all_history()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Export of all transactions failed: %s', exc)
        return jsonify({'error': f'Failed to export transactions: {exc.message}'}), 502
    rows = exports.transaction_rows(transactions, books, users,
                                    per_day=app.config['LATE_FEE_PER_DAY'])
    rows = exports.filter_rows(rows, *_transaction_filters())
    return _export_response(rows, 'All Transactions', 'all_transactions', include_user=True)


@app.route('/admin/roles')
@requires(Capability.MANAGE_ROLES)
def role_manager():
    try:
        users = get_backend().fetch_users_with_profiles()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load users: %s', exc)
        flash(f'Could not load users: {exc.message}', 'error')
        users = []
    query = request.args.get('q', '').strip().lower()
    if query:
        users = [u for u in users
                 if query in (u.get('email') or '').lower()
                 or query in (u.get('role') or '').lower()]
    return render_template('roles.html', users=users, roles=list(Role), query=query)


@app.route('/admin/roles/<user_id>', methods=['POST'])
@requires(Capability.MANAGE_ROLES)
def update_role(user_id):
    value = request.form.get('role', '').strip().lower()
    if value not in {r.value for r in Role}:
        return jsonify({'error': f'Unknown role {value!r}'}), 400
    try:
        get_backend().update_user_role(user_id, Role(value))
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to set role of %s to %s: %s', user_id, value, exc)
        return jsonify({'error': f'Failed to update user role: {exc.message}'}), 502
    app.logger.info('Role of %s set to %s by %s', user_id, value, current_user.id)
    return jsonify({'status': 'ok', 'role': value})


@app.route('/resources')
@login_required
def resources():
    try:
        documents = get_backend().fetch_resources()
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not load resources: %s', exc)
        flash(f'Could not load resources: {exc.message}', 'error')
        documents = []
    query = request.args.get('q', '').strip().lower()
    if query:
        documents = [d for d in documents
                     if query in (d.get('name') or '').lower()
                     or query in (d.get('description') or '').lower()]
    return render_template('resources.html', resources=documents, query=query)


@app.route('/resources', methods=['POST'])
@requires(Capability.MANAGE_RESOURCES)
def upload_resource():
    upload = request.files.get('file')
    name = request.form.get('name', '').strip()
    if upload is None or not upload.filename or not name:
        return jsonify({'error': 'Please select a PDF file and enter a document name.'}), 400
    if not upload.filename.lower().endswith('.pdf'):
        return jsonify({'error': 'Only PDF files can be uploaded.'}), 400
    cover = request.files.get('cover')
    try:
        document = get_backend().upload_resource(
            name,
            upload.read(),
            upload.filename,
            user_id=current_user.id,
            description=request.form.get('description'),
            flipbook_url=request.form.get('flipbook_url'),
            cover=cover.read() if cover and cover.filename else None,
            cover_filename=cover.filename if cover else None,
            stamp=int(time.time() * 1000),
        )
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Upload of %r failed: %s', name, exc)
        return jsonify({'error': f'Failed to upload PDF: {exc.message}'}), 502
    return jsonify({'status': 'ok', 'resource': document, 'message': 'PDF uploaded successfully!'}), 201


@app.route('/resources/<resource_id>/edit', methods=['POST'])
@requires(Capability.MANAGE_RESOURCES)
def edit_resource(resource_id):
    name = request.form.get('name', '').strip()
    if not name:
        return jsonify({'error': 'Please enter a document name.'}), 400
    cover = request.files.get('cover')
    try:
        document = get_backend().update_resource(
            resource_id,
            name,
            flipbook_url=request.form.get('flipbook_url'),
            description=request.form.get('description'),
            cover=cover.read() if cover and cover.filename else None,
            cover_filename=cover.filename if cover else None,
            stamp=int(time.time() * 1000),
        )
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to update resource %s: %s', resource_id, exc)
        return jsonify({'error': f'Failed to update resource: {exc.message}'}), 502
    if not document:
        return jsonify({'error': 'Resource not found'}), 404
    return jsonify({'status': 'ok', 'resource': document, 'message': 'Resource updated successfully!'})


@app.route('/resources/<resource_id>/delete', methods=['POST'])
@requires(Capability.MANAGE_RESOURCES)
def delete_resource(resource_id):
    try:
        get_backend().delete_resource(resource_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Failed to delete resource %s: %s', resource_id, exc)
        return jsonify({'error': f'Failed to delete resource: {exc.message}'}), 502
    return jsonify({'status': 'ok'})


@app.route('/resources/<resource_id>/download')
@login_required
def download_resource(resource_id):
    """Redirect to a short-lived signed URL for the stored PDF."""
    backend = get_backend()
    try:
        document = backend.fetch_resource(resource_id)
        if document is None:
            return jsonify({'error': 'Resource not found'}), 404
        url = backend.signed_url(document['filepath'], app.config['SIGNED_URL_TTL'])
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Could not sign resource %s: %s', resource_id, exc)
        return jsonify({'error': f'Failed to open PDF: {exc.message}'}), 502
    return redirect(url)


@app.route('/books/<book_id>/summary')
@login_required
def book_summary(book_id):
    try:
        book = get_backend().fetch_book(book_id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        return jsonify({'error': f'Failed to load book: {exc.message}'}), 502
    if book is None:
        return jsonify({'error': 'Book not found'}), 404
    try:
        summary = get_ai().generate_book_summary(book['title'], book.get('author'),
                                                 book.get('description'))
    except AIError as exc:
        app.logger.error('Summary for %s failed: %s', book_id, exc)
        return jsonify({'error': str(exc)}), 502
    return jsonify({'summary': summary})


@app.route('/ai/description', methods=['POST'])
@requires(Capability.MANAGE_BOOKS)
def generate_description():
    title = request.form.get('title', '').strip()
    if not title:
        return jsonify({'error': 'Title is required'}), 400
    try:
        description = get_ai().generate_book_description(title, request.form.get('author', '').strip())
    except AIError as exc:
        app.logger.error('Description for %r failed: %s', title, exc)
        return jsonify({'error': str(exc)}), 502
    return jsonify({'description': description})


@app.route('/ai/cover', methods=['POST'])
@requires(Capability.MANAGE_BOOKS)
def generate_cover():
    title = request.form.get('title', '').strip()
    if not title:
        return jsonify({'error': 'Title is required'}), 400
    try:
        image = get_ai().generate_book_cover(title, request.form.get('author', '').strip())
    except AIError as exc:
        app.logger.error('Cover for %r failed: %s', title, exc)
        return jsonify({'error': str(exc)}), 502
    return jsonify({'image': image})


@app.route('/recommendations')
@login_required
def recommendations():
    return render_template('recommendations.html')


@app.route('/recommendations', methods=['POST'])
@login_required
def generate_recommendations():
    """Recommend catalog books based on what the user borrowed recently."""
    try:
        picks = recommend_for_user(get_backend(), get_ai(), current_user.id)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Recommendation inputs failed to load: %s', exc)
        return jsonify({'error': f'Failed to load your history: {exc.message}'}), 502
    except AIError as exc:
        app.logger.error('Recommendations failed: %s', exc)
        return jsonify({'error': str(exc)}), 502
    if picks is None:
        return jsonify({'recommendations': [],
                        'message': 'Borrow a few books to get recommendations.'})
    return jsonify({'recommendations': picks})


@app.route('/assistant')
@login_required
def assistant():
    return render_template('assistant.html', greeting=GREETING)


@app.route('/assistant', methods=['POST'])
@login_required
def assistant_reply():
    """One chat turn; the page keeps the conversation and sends it back."""
    payload = request.get_json(silent=True) or {}
    message = str(payload.get('message') or '').strip()
    if not message:
        return jsonify({'error': 'Please enter a message.'}), 400
    if len(message) > MAX_MESSAGE_LENGTH:
        return jsonify({'error': f'Messages are limited to {MAX_MESSAGE_LENGTH} characters.'}), 400
    bot = LibraryAssistant(get_ai(), get_backend(), current_user.id)
    try:
        reply = bot.reply(clean_history(payload.get('history')), message)
    except NotAuthenticated:
        raise
    except RemoteCallFailure as exc:
        app.logger.error('Assistant lookup failed: %s', exc)
        return jsonify({'error': f'Failed to look that up: {exc.message}'}), 502
    except AIError as exc:
        app.logger.error('Assistant reply failed: %s', exc)
        return jsonify({'error': str(exc)}), 502
    return jsonify({'reply': reply})


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=8080, debug=True)
