from flask import Blueprint
from flask_login import login_user, logout_user, login_required, current_user
from quizlead_crm.services.auth_service import AuthService
from quizlead_crm.utils import api_response, json_body

auth = Blueprint('auth', __name__)


def _session_payload(user):
    return {
        'token': AuthService.issue_token(user),
        'user': user.to_dict(),
    }


@auth.route('/api/auth/login', methods=['POST'])
def login():
    """Admin login (email + password)."""
    data = json_body()
    user = AuthService.login_admin(data.get('email'), data.get('password'))
    login_user(user, remember=bool(data.get('remember')))
    return api_response(data=_session_payload(user))


@auth.route('/api/auth/otp/request', methods=['POST'])
def otp_request():
    """Salesperson login, step 1: a code is sent to the WhatsApp number."""
    data = json_body()
    AuthService.request_otp(data.get('phone'))
    # Same answer for known and unknown phones
    return api_response(data={'message': 'Se o número estiver cadastrado, você receberá um código no WhatsApp.'})


@auth.route('/api/auth/otp/verify', methods=['POST'])
def otp_verify():
    data = json_body()
    user = AuthService.verify_otp(data.get('phone'), data.get('code'))
    login_user(user)
    return api_response(data=_session_payload(user))


@auth.route('/api/auth/me', methods=['GET'])
@login_required
def me():
    return api_response(data=current_user.to_dict())


@auth.route('/api/auth/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return api_response(data={'message': 'Sessão encerrada.'})
