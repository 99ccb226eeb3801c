from flask import Blueprint, request

from purchase_fulfillment.extensions import get_runtime
from purchase_fulfillment.services import entitlements_api_service

entitlements_bp = Blueprint('entitlements_api', __name__)


@entitlements_bp.route('/api/purchases', methods=['GET'])
def purchase_history():
    return entitlements_api_service.get_purchase_history(get_runtime(), request)


@entitlements_bp.route('/api/entitlements/<product_id>', methods=['GET'])
def check_access(product_id):
    return entitlements_api_service.check_access(get_runtime(), request, product_id)
