from flask import Blueprint, request

from purchase_fulfillment.extensions import get_runtime
from purchase_fulfillment.services import admin_api_service

admin_bp = Blueprint('admin_api', __name__)


@admin_bp.route('/api/admin/reconcile', methods=['POST'])
def reconcile_entitlements():
    return admin_api_service.reconcile_entitlements(get_runtime(), request)
