from flask import jsonify, current_app, request
from quizlead_crm.models import db, Notification, Integration, User, ROLE_ADMIN, get_now_br
from quizlead_crm.errors import ValidationError
import re
import time
import functools
import requests

def api_response(success=True, data=None, error=None, status=200):
    """Standardized JSON response for all API routes."""
    response = {
        'success': success,
        'data': data,
        'error': error
    }
    return jsonify(response), status

def json_body():
    """The request JSON as a dict. An empty or unparsable body counts as {}."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('O corpo da requisição deve ser um objeto JSON.', field='body')
    return data

def slugify(text):
    """Lowercase, whitespace runs to '-', drops anything outside [a-z0-9-]."""
    slug = re.sub(r'\s+', '-', (text or '').strip().lower())
    return re.sub(r'[^a-z0-9-]', '', slug)

def create_notification(user_id, type, title, message):
    """Adds a notification to the current session. The caller commits."""
    notification = Notification(
        user_id=user_id,
        type=type,
        title=title,
        message=message
    )
    db.session.add(notification)
    return notification

def notify_admins(type, title, message):
    admins = User.query.filter_by(role=ROLE_ADMIN).all()
    for admin in admins:
        create_notification(admin.id, type, title, message)
    return len(admins)

def retry_request(retries=3, backoff_factor=0.3, status_codes=(500, 502, 503, 504)):
    """
    Decorator for retrying requests with exponential backoff.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            for i in range(retries + 1):
                try:
                    response = func(*args, **kwargs)
                    if response is not None and response.status_code in status_codes:
                        response.raise_for_status()
                    return response
                except requests.exceptions.RequestException as e:
                    last_exception = e
                    # Only server errors and network failures are retried
                    is_retryable = False
                    if getattr(e, 'response', None) is not None:
                        if e.response.status_code in status_codes:
                            is_retryable = True
                    elif isinstance(e, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
                        is_retryable = True

                    if not is_retryable or i == retries:
                        raise e

                    wait_time = backoff_factor * (2 ** i)
                    current_app.logger.warning(f"Request failed ({e}), retrying in {wait_time:.1f}s")
                    time.sleep(wait_time)
            raise last_exception
        return wrapper
    return decorator

def update_integration_health(service, error=None):
    """Updates the last_error and last_sync_at for an integration. The caller commits."""
    integration = Integration.query.filter_by(service=service).first()
    if not integration:
        return
    if error:
        integration.last_error = str(error)
    else:
        integration.last_error = None
        integration.last_sync_at = get_now_br()
