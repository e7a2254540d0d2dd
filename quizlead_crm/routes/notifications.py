from flask import Blueprint
from flask_login import login_required, current_user
from quizlead_crm.models import db, Notification
from quizlead_crm.errors import NotFound, Forbidden
from quizlead_crm.utils import api_response

notifications_bp = Blueprint('notifications', __name__)


@notifications_bp.route('/api/notifications', methods=['GET'])
@login_required
def get_notifications():
    # Unread first, then recent read ones (20 total)
    unread = Notification.query.filter_by(user_id=current_user.id, read=False)\
        .order_by(Notification.created_at.desc(), Notification.id.desc()).all()

    read_limit = 20 - len(unread)
    read = []
    if read_limit > 0:
        read = Notification.query.filter_by(user_id=current_user.id, read=True)\
            .order_by(Notification.created_at.desc(), Notification.id.desc()).limit(read_limit).all()

    return api_response(data={
        'unread_count': len(unread),
        'notifications': [{
            'id': n.id,
            'title': n.title,
            'message': n.message,
            'type': n.type,
            'read': n.read,
            'created_at': n.created_at.strftime('%d/%m %H:%M')
        } for n in unread + read]
    })


@notifications_bp.route('/api/notifications/<int:id>/read', methods=['POST'])
@login_required
def mark_read(id):
    notification = db.session.get(Notification, id)
    if not notification:
        raise NotFound('Notificação não encontrada.')
    if notification.user_id != current_user.id:
        raise Forbidden('Notificação de outro usuário.')

    notification.read = True
    db.session.commit()
    return api_response(data={'id': id})


@notifications_bp.route('/api/notifications/read-all', methods=['POST'])
@login_required
def mark_all_read():
    count = Notification.query.filter_by(user_id=current_user.id, read=False).update({'read': True})
    db.session.commit()
    return api_response(data={'updated': count})
