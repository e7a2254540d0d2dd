from flask import Blueprint, request, current_app
from quizlead_crm.services.distribution_service import DistributionService
from quizlead_crm.services.remarketing_service import RemarketingService
from quizlead_crm.errors import AuthenticationError
from quizlead_crm.utils import api_response
import hmac

jobs_bp = Blueprint('jobs_bp', __name__)


def _check_cron_secret():
    secret = current_app.config.get('CRON_SECRET') or ''
    auth_header = request.headers.get('Authorization', '')
    received = auth_header.split(" ", 1)[1] if auth_header.startswith('Bearer ') else ''
    if not secret or not hmac.compare_digest(received.encode(), secret.encode()):
        raise AuthenticationError('Cron não autorizado.')


@jobs_bp.route('/api/cron/remarketing', methods=['GET', 'POST'])
def remarketing_job():
    """
    Sends remarketing messages for idle leads.
    Should be called a few times a day by an external cron (e.g. Vercel Cron).
    """
    _check_cron_secret()
    return api_response(data=RemarketingService.run())


@jobs_bp.route('/api/cron/reset-daily-counters', methods=['GET', 'POST'])
def reset_counters_job():
    """Called once a day at midnight (Brasília)."""
    _check_cron_secret()
    return api_response(data={'reset': DistributionService.reset_daily_counters()})
