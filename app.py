from flask import Blueprint, Flask, current_app, g, request, jsonify, redirect, url_for, session, render_template
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
import logging
import sqlite3

import os
from typing import Optional, Dict, Any

from todo_service import TodoError, TodoService, Unauthorized
from todo_store import Identity, SessionStore, TodoStore
from todo_suggestions import DEFAULT_MODEL_NAME, SuggestionRelay, build_model

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

SCOPES = [
    'openid',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
]

bp = Blueprint('todos', __name__)


def load_config() -> Dict[str, Any]:
    return {
        'SECRET_KEY': os.getenv('SECRET_KEY') or os.urandom(24),
        'DATABASE_PATH': os.getenv('DATABASE_PATH') or os.path.join(BASE_DIR, 'todo.db'),
        'ADMIN_EMAIL': os.getenv('ADMIN_EMAIL'),
        'GOOGLE_CLIENT_ID': os.getenv('GOOGLE_CLIENT_ID'),
        'GOOGLE_CLIENT_SECRET': os.getenv('GOOGLE_CLIENT_SECRET'),
        'CREDENTIALS_FILE': os.getenv('CREDENTIALS_FILE') or os.path.join(BASE_DIR, 'credentials.json'),
        'OAUTH_REDIRECT_URI': os.getenv('OAUTH_REDIRECT_URI'),
        'GEMINI_API_KEY': os.getenv('GEMINI_API_KEY'),
        'GEMINI_MODEL': os.getenv('GEMINI_MODEL') or DEFAULT_MODEL_NAME,
        'SESSION_MAX_AGE': int(os.getenv('SESSION_MAX_AGE') or 30 * 24 * 60 * 60),
        'SESSION_UPDATE_AGE': int(os.getenv('SESSION_UPDATE_AGE') or 24 * 60 * 60),
        'SESSION_COOKIE_SAMESITE': 'Lax',
    }


def create_app(config_override: Optional[Dict[str, Any]] = None) -> Flask:
    app = Flask(
        __name__,
        template_folder=os.path.join(BASE_DIR, "templates"),
        static_folder=os.path.join(BASE_DIR, "assets"),
        static_url_path="/assets",
    )
    app.config.update(load_config())
    if config_override:
        app.config.update(config_override)

    store = TodoStore(app.config['DATABASE_PATH'])
    sessions = SessionStore(
        store,
        max_age=app.config['SESSION_MAX_AGE'],
        update_age=app.config['SESSION_UPDATE_AGE'],
    )
    purged = sessions.purge_expired()
    if purged:
        app.logger.info('Purged %d expired sessions', purged)

    model = app.config.get('GEMINI_MODEL_CLIENT')
    if model is None:
        model = build_model(app.config['GEMINI_API_KEY'], app.config['GEMINI_MODEL'])

    if not app.config['ADMIN_EMAIL']:
        app.logger.info('ADMIN_EMAIL not set; no account can list all todos.')

    app.extensions['todo_store'] = store
    app.extensions['todo_sessions'] = sessions
    app.extensions['todo_service'] = TodoService(store, admin_email=app.config['ADMIN_EMAIL'])
    app.extensions['todo_suggestions'] = SuggestionRelay(model)

    app.register_blueprint(bp)
    app.register_error_handler(TodoError, handle_todo_error)
    app.register_error_handler(sqlite3.Error, handle_db_error)
    return app


def todo_service() -> TodoService:
    return current_app.extensions['todo_service']


def session_store() -> SessionStore:
    return current_app.extensions['todo_sessions']


def current_identity() -> Optional[Identity]:
    return g.get('identity')


def json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def handle_todo_error(exc: TodoError):
    if exc.status_code >= 500:
        current_app.logger.error('%s: %s', type(exc).__name__, exc.message)
    return jsonify(exc.to_dict()), exc.status_code


def handle_db_error(exc: sqlite3.Error):
    current_app.logger.exception('Database failure on %s %s: %s', request.method, request.path, exc)
    return jsonify({'error': 'Internal server error'}), 500


@bp.before_app_request
def load_identity():
    token = session.get('session_token')
    g.identity = session_store().resolve(token) if token else None
    if token and g.identity is None:
        session.pop('session_token', None)


# Google sign-in

def oauth_redirect_uri() -> str:
    return current_app.config['OAUTH_REDIRECT_URI'] or f"{request.host_url.rstrip('/')}/oauth2callback"


def oauth_flow(state: Optional[str] = None, code_verifier: Optional[str] = None) -> Flow:
    config = current_app.config
    if config['GOOGLE_CLIENT_ID']:
        client_config = {
            'web': {
                'client_id': config['GOOGLE_CLIENT_ID'],
                'client_secret': config['GOOGLE_CLIENT_SECRET'],
                'auth_uri': 'https://accounts.google.com/o/oauth2/auth',
                'token_uri': 'https://oauth2.googleapis.com/token',
            }
        }
        flow = Flow.from_client_config(client_config, scopes=SCOPES, state=state, code_verifier=code_verifier)
    else:
        flow = Flow.from_client_secrets_file(
            config['CREDENTIALS_FILE'], scopes=SCOPES, state=state, code_verifier=code_verifier,
        )
    flow.redirect_uri = oauth_redirect_uri()
    return flow


def fetch_google_identity(credentials) -> Optional[Identity]:
    try:
        oauth_service = build('oauth2', 'v2', credentials=credentials)
        profile = oauth_service.userinfo().get().execute()
    except Exception as exc:  # pragma: no cover - network call
        current_app.logger.warning('Failed to fetch Google profile: %s', exc)
        return None

    email = (profile or {}).get('email')
    if not email:
        return None
    store: TodoStore = current_app.extensions['todo_store']
    return store.upsert_user(email, (profile or {}).get('name'))


def sign_in(identity: Identity) -> None:
    session.clear()
    session['session_token'] = session_store().create(identity.id)
    current_app.logger.info('User %s signed in', identity.id)


@bp.route('/auth')
def auth():
    flow = oauth_flow()
    auth_url, state = flow.authorization_url(access_type='online', prompt='select_account')
    session['oauth_state'] = state
    session['oauth_code_verifier'] = flow.code_verifier
    return redirect(auth_url)


@bp.route('/oauth2callback')
def oauth2callback():
    # Allow plain http for local dev
    if request.scheme == 'http':
        os.environ['OAUTHLIB_INSECURE_TRANSPORT'] = '1'

    flow = oauth_flow(
        state=session.pop('oauth_state', None),
        code_verifier=session.pop('oauth_code_verifier', None),
    )
    try:
        flow.fetch_token(authorization_response=request.url)
    except Exception as exc:  # pragma: no cover - network call
        current_app.logger.warning('OAuth token exchange failed: %s', exc)
        return redirect(url_for('todos.index', error='signin'))

    identity = fetch_google_identity(flow.credentials)
    if identity is None:
        return redirect(url_for('todos.index', error='signin'))
    sign_in(identity)
    return redirect(url_for('todos.index'))


@bp.route('/logout', methods=['POST'])
def logout():
    session_store().expire(session.get('session_token'))
    session.clear()
    return jsonify({'status': 'logged_out'})


@bp.route('/check_auth')
def check_auth():
    identity = current_identity()
    return jsonify({
        'authenticated': identity is not None,
        'user': identity.to_dict() if identity else None,
        'isAdmin': todo_service().is_admin(identity),
    })


# Pages

@bp.route('/')
def index():
    identity = current_identity()
    return render_template(
        'index.html',
        user_profile=identity.to_dict() if identity else {},
        is_admin=todo_service().is_admin(identity),
        signin_error=request.args.get('error') == 'signin',
    )


@bp.route('/contact')
def contact():
    return render_template('contact.html')


# Todos API

@bp.route('/todos', methods=['GET'])
def list_todos():
    return jsonify(todo_service().list_todos(current_identity()))


@bp.route('/todos', methods=['POST'])
def create_todo():
    payload = json_body()
    todo = todo_service().create_todo(current_identity(), payload)
    return jsonify(todo), 201


@bp.route('/todos/<todo_id>', methods=['PUT'])
def update_todo(todo_id):
    payload = json_body()
    return jsonify(todo_service().update_todo(current_identity(), todo_id, payload))


@bp.route('/todos/<todo_id>', methods=['DELETE'])
def delete_todo(todo_id):
    todo_service().delete_todo(current_identity(), todo_id)
    return '', 204


@bp.route('/ai/suggest', methods=['POST'])
def suggest_todos():
    if current_identity() is None:
        raise Unauthorized()
    payload = json_body()
    relay: SuggestionRelay = current_app.extensions['todo_suggestions']
    suggestions = relay.suggest(payload.get('todos'))
    return jsonify({'suggestions': suggestions})


if __name__ == '__main__':
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    create_app().run(host='localhost', port=9000, debug=True)
