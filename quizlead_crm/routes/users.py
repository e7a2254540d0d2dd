from flask import Blueprint, request
from flask_login import login_required, current_user
from quizlead_crm.services.user_service import UserService
from quizlead_crm.services.whatsapp_service import WhatsAppService
from quizlead_crm.session import current_actor, admin_required
from quizlead_crm.utils import api_response, json_body

users_bp = Blueprint('users', __name__)


@users_bp.route('/api/users', methods=['GET'])
@login_required
@admin_required
def list_users():
    users = UserService.list_users(role=request.args.get('role') or None)
    return api_response(data=[u.to_dict() for u in users])


@users_bp.route('/api/users', methods=['POST'])
@login_required
@admin_required
def create_user():
    user = UserService.create_user(json_body())
    return api_response(data=user.to_dict(), status=201)


@users_bp.route('/api/users/<int:id>', methods=['PATCH'])
@login_required
@admin_required
def update_user(id):
    user = UserService.update_user(id, json_body())
    return api_response(data=user.to_dict())


@users_bp.route('/api/users/<int:id>', methods=['DELETE'])
@login_required
@admin_required
def delete_user(id):
    UserService.delete_user(id, current_actor())
    return api_response(data={'id': id})


@users_bp.route('/api/users/<int:id>/whatsapp', methods=['PUT'])
@login_required
@admin_required
def set_whatsapp_status(id):
    user = UserService.get_user(id)
    data = json_body()
    WhatsAppService.set_status(user, data.get('status'))
    return api_response(data=user.to_dict())


@users_bp.route('/api/users/me/whatsapp', methods=['GET'])
@login_required
def my_whatsapp_status():
    """Refreshes the connection state of the logged user's instance."""
    user = UserService.get_user(current_user.id)
    status = WhatsAppService.connection_state(user)
    return api_response(data={
        'status': status,
        'instance': WhatsAppService.instance_name(user),
    })
