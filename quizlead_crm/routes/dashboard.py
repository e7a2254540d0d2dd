from flask import Blueprint
from flask_login import login_required
from quizlead_crm.services.lead_service import LeadService
from quizlead_crm.session import current_actor
from quizlead_crm.utils import api_response

dashboard_bp = Blueprint('dashboard', __name__)


@dashboard_bp.route('/api/dashboard', methods=['GET'])
@login_required
def dashboard():
    # Salespeople only see their own numbers
    return api_response(data=LeadService.dashboard(current_actor()))
