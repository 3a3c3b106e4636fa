import os
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from google_auth_oauthlib.flow import Flow

from instacal.calendar_commit import CalendarCommitEngine
from instacal.calendar_service import GoogleCalendarService
from instacal.credentials import SCOPES, GoogleCredentialProvider, GoogleTokenRefresher
from instacal.errors import CredentialError, InstacalError, ValidationError
from instacal.event_extractor import DEFAULT_DURATION, parse_timestamp
from instacal.ingestion import IngestionOrchestrator
from instacal.instagram import QuickReplyHandler, normalize_message, verify_subscription
from instacal.models import as_utc, db
from instacal.ocr import build_ocr
from instacal.settings import config
from instacal.stores import (
    CommittedEventStore,
    DraftStore,
    MessageStore,
    UserStore,
    WebhookLogStore,
)

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)

EDITABLE_DRAFT_FIELDS = ('title', 'location', 'notes')


# Configure logging
def setup_logging(logs_dir: str = 'logs'):
    """Setup file and console logging"""
    os.makedirs(logs_dir, exist_ok=True)

    # Configure logging format
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Setup file handler for all logs
    file_handler = logging.FileHandler(os.path.join(logs_dir, 'app.log'))
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(log_format))

    # Setup console handler for important logs
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))

    # Configure root logger
    logging.basicConfig(
        level=logging.DEBUG,
        format=log_format,
        handlers=[file_handler, console_handler]
    )


@dataclass
class Services:
    """Pipeline components wired for the current request"""
    users: UserStore
    messages: MessageStore
    drafts: DraftStore
    committed: CommittedEventStore
    webhook_logs: WebhookLogStore
    commit_engine: CalendarCommitEngine
    orchestrator: IngestionOrchestrator
    quick_replies: QuickReplyHandler


def build_services() -> Services:
    """Wire stores and clients around the request's database session"""
    overrides = current_app.extensions['instacal']
    app_config = current_app.config
    session = db.session

    calendar_factory = overrides.get('calendar_factory') or partial(
        GoogleCalendarService,
        calendar_id=app_config['GOOGLE_CALENDAR_ID'],
        timeout=app_config['HTTP_TIMEOUT']
    )
    refresher = overrides.get('token_refresher') or GoogleTokenRefresher(
        app_config['GOOGLE_CLIENT_ID'], app_config['GOOGLE_CLIENT_SECRET'])
    ocr = overrides.get('ocr') or build_ocr(app_config['OCR_ENGINE'], timeout=app_config['HTTP_TIMEOUT'])

    users = UserStore(session)
    messages = MessageStore(session)
    drafts = DraftStore(session)
    committed = CommittedEventStore(session)

    credential_provider = GoogleCredentialProvider(users, refresher, calendar_factory)
    commit_engine = CalendarCommitEngine(drafts, committed, credential_provider, calendar_factory,
                                         calendar_id=app_config['GOOGLE_CALENDAR_ID'])
    return Services(
        users=users,
        messages=messages,
        drafts=drafts,
        committed=committed,
        webhook_logs=WebhookLogStore(session),
        commit_engine=commit_engine,
        orchestrator=IngestionOrchestrator(ocr, drafts, messages, commit_engine),
        quick_replies=QuickReplyHandler(drafts, commit_engine)
    )


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _require_int(data: Dict[str, Any], field: str) -> int:
    value = data.get(field)
    if value is None or value == '':
        raise ValidationError(f"Missing required field: {field}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Field {field} must be an integer")


def _oauth_flow(state: Optional[str] = None) -> Flow:
    app_config = current_app.config
    client_config = {
        "web": {
            "client_id": app_config['GOOGLE_CLIENT_ID'],
            "client_secret": app_config['GOOGLE_CLIENT_SECRET'],
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": [app_config['GOOGLE_REDIRECT_URI']]
        }
    }
    flow = Flow.from_client_config(client_config, scopes=SCOPES, state=state)
    flow.redirect_uri = app_config['GOOGLE_REDIRECT_URI']
    return flow


@api.route('/health')
def health():
    return jsonify({'status': 'healthy'})


@api.route('/webhooks/instagram', methods=['GET'])
def verify_instagram_webhook():
    """Answer Instagram's subscription check"""
    challenge = verify_subscription(
        request.args.get('hub.mode'),
        request.args.get('hub.verify_token'),
        request.args.get('hub.challenge'),
        current_app.config['INSTAGRAM_VERIFY_TOKEN']
    )
    if challenge is None:
        logger.info("Webhook verification failed")
        return 'Forbidden', 403
    logger.info("Webhook verified")
    return challenge, 200


@api.route('/webhooks/instagram', methods=['POST'])
def receive_instagram_webhook():
    """Store incoming messages and route media to OCR and text to extraction"""
    body = _json_body()
    services = build_services()
    log_id = services.webhook_logs.insert('instagram', 'message', body)

    errors = []
    for entry in body.get('entry') or []:
        for msg in entry.get('messaging') or []:
            try:
                normalized = normalize_message(msg, entry.get('id'))
                user_id = services.users.upsert_by_psid(normalized.sender_id)

                # Instagram redelivers when a webhook call fails
                stored = services.messages.get_by_platform_id(user_id, normalized.message_id)
                if stored is not None and stored.processed:
                    logger.info(f"Message {normalized.message_id} already handled, skipping")
                    continue
                if stored is not None:
                    message_id = stored.id
                else:
                    message_id = services.messages.insert(
                        user_id=user_id,
                        platform_msg_id=normalized.message_id,
                        type=normalized.type,
                        text=normalized.text,
                        media_url=normalized.media_url,
                        raw_json=normalized.to_dict()
                    )

                if normalized.quick_reply_payload:
                    services.quick_replies.handle(user_id, normalized.quick_reply_payload)
                    services.messages.mark_processed(message_id)
                elif normalized.has_media:
                    services.orchestrator.process(user_id, message_id, normalized.media_url)
                elif normalized.text:
                    services.orchestrator.process_text(user_id, message_id, normalized.text)
                else:
                    logger.info(f"Stored message {message_id} for user {user_id}, nothing to extract")
                    services.messages.mark_processed(message_id)
            except (InstacalError, KeyError) as e:
                logger.error(f"Error processing message: {e}")
                errors.append(str(e))

    services.webhook_logs.finish(log_id, '\n'.join(errors) or None)
    return 'OK', 200


@api.route('/api/process-ocr', methods=['POST'])
def process_ocr():
    """Run OCR and extraction for a stored media message"""
    data = _json_body()
    user_id = _require_int(data, 'userId')
    message_id = _require_int(data, 'messageId')
    media_url = data.get('mediaUrl')
    if not media_url:
        raise ValidationError("Missing required field: mediaUrl")

    result = build_services().orchestrator.process(user_id, message_id, media_url)
    return jsonify(result.to_dict())


@api.route('/api/process-text', methods=['POST'])
def process_text():
    """Run extraction on the text of a stored message"""
    data = _json_body()
    user_id = _require_int(data, 'userId')
    message_id = _require_int(data, 'messageId')
    text = data.get('text')
    if not text:
        raise ValidationError("Missing required field: text")

    result = build_services().orchestrator.process_text(user_id, message_id, text)
    return jsonify(result.to_dict())


@api.route('/api/calendar/events', methods=['POST'])
def create_calendar_event():
    """Commit a draft to Google Calendar"""
    data = _json_body()
    user_id = _require_int(data, 'userId')
    draft_event_id = _require_int(data, 'draftEventId') if data.get('draftEventId') is not None else None

    result = build_services().commit_engine.commit(user_id, draft_event_id)
    return jsonify(result.to_dict())


@api.route('/api/users/<int:user_id>/drafts')
def list_drafts(user_id):
    drafts = build_services().drafts.list_for_user(user_id)
    return jsonify([draft.to_dict() for draft in drafts])


@api.route('/api/drafts/<int:draft_id>', methods=['PATCH'])
def update_draft(draft_id):
    """Correct fields of a draft before it is committed"""
    data = _json_body()
    services = build_services()
    draft = services.drafts.get(draft_id)
    if draft is None:
        return jsonify({'error': 'Draft event not found'}), 404

    fields = {key: data[key] for key in EDITABLE_DRAFT_FIELDS if key in data}

    if data.get('start'):
        parsed = parse_timestamp(str(data['start']))
        if parsed is None:
            raise ValidationError(f"Could not understand start: {data['start']}")
        fields.update(start_dt=parsed[0], start_raw=None, end_dt=parsed[0] + DEFAULT_DURATION)

    if data.get('end'):
        parsed = parse_timestamp(str(data['end']))
        if parsed is None:
            raise ValidationError(f"Could not understand end: {data['end']}")
        fields['end_dt'] = parsed[0]

    start = fields.get('start_dt', draft.start_dt)
    end = fields.get('end_dt', draft.end_dt)
    if start is not None and end is not None and as_utc(end) < as_utc(start):
        raise ValidationError("Event end must not be before its start")

    draft = services.drafts.update(draft_id, **fields)
    return jsonify(draft.to_dict())


@api.route('/auth/google')
def google_auth():
    """Return the consent URL for connecting a Google Calendar"""
    user_id = request.args.get('user_id')
    if not user_id:
        return jsonify({'error': 'user_id required'}), 400

    auth_url, _ = _oauth_flow().authorization_url(
        access_type='offline',
        prompt='consent',
        state=user_id
    )
    return jsonify({'authUrl': auth_url})


@api.route('/auth/google/callback')
def google_auth_callback():
    """Exchange the authorization code and store the user's tokens"""
    error = request.args.get('error')
    if error:
        return jsonify({'error': f'Authentication error: {error}'}), 400

    code = request.args.get('code')
    state = request.args.get('state')  # our user id
    if not code or not state:
        return jsonify({'error': 'Missing code or state parameter'}), 400

    flow = _oauth_flow(state=state)
    try:
        flow.fetch_token(code=code)
    except Exception as e:
        logger.error(f"OAuth callback error: {e}")
        raise CredentialError(f"Token exchange failed: {e}") from e

    credentials = flow.credentials
    build_services().users.store_google_tokens(int(state), credentials.token, credentials.refresh_token)
    logger.info(f"Connected Google Calendar for user {state}")
    return jsonify({'success': True, 'message': 'Google Calendar connected'})


@api.errorhandler(InstacalError)
def handle_instacal_error(error: InstacalError):
    if error.status_code >= 500:
        logger.error(f"{error.code}: {error.message}")
    else:
        logger.warning(f"{error.code}: {error.message}")
    return jsonify(error.to_dict()), error.status_code


def create_app(config_name: str = 'default', ocr: Optional[Callable[[str], str]] = None,
               calendar_factory: Optional[Callable[[str], GoogleCalendarService]] = None,
               token_refresher: Optional[Callable[[str], str]] = None) -> Flask:
    """Application factory; the keyword arguments replace external clients"""
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    CORS(app)

    if not app.testing:
        setup_logging(app.config['LOG_DIR'])

    db.init_app(app)
    app.extensions['instacal'] = {
        'ocr': ocr,
        'calendar_factory': calendar_factory,
        'token_refresher': token_refresher
    }
    app.register_blueprint(api)

    with app.app_context():
        db.create_all()

    return app


def main():
    app = create_app(os.getenv('FLASK_ENV', 'default'))
    app.run(host=app.config['APP_HOST'], port=app.config['APP_PORT'], debug=app.config.get('DEBUG', False))


if __name__ == '__main__':
    main()
