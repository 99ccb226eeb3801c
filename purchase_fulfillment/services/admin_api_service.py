"""Operator endpoints for the reconciliation/repair path."""

import time

from flask import jsonify

from purchase_fulfillment.services import reconciliation_service

DEFAULT_LOOKBACK_SECONDS = 3 * 24 * 60 * 60


def parse_since(raw_value, now_ts=None):
    now_ts = time.time() if now_ts is None else now_ts
    if raw_value in (None, ''):
        return int(now_ts - DEFAULT_LOOKBACK_SECONDS)
    try:
        since = int(float(raw_value))
    except (TypeError, ValueError):
        return None
    if since < 0 or since > now_ts:
        return None
    return since


def reconcile_entitlements(app_ctx, request):
    decoded_token = app_ctx.verify_firebase_token(request)
    if not decoded_token:
        return jsonify({'error': 'Unauthorized'}), 401
    if not app_ctx.is_admin_user(decoded_token):
        return jsonify({'error': 'Forbidden'}), 403
    if app_ctx.db is None:
        return jsonify({'error': 'Database not initialized'}), 500

    data = request.get_json(silent=True) or {}
    since = parse_since(data.get('since'))
    if since is None:
        return jsonify({'error': 'since must be a unix timestamp in the past'}), 400
    limit = data.get('limit')
    if limit is not None:
        try:
            limit = max(1, int(limit))
        except (TypeError, ValueError):
            return jsonify({'error': 'limit must be an integer'}), 400

    result = reconciliation_service.reconcile(
        since,
        db=app_ctx.db,
        provider=app_ctx.provider,
        firestore_module=app_ctx.firestore,
        page_size=app_ctx.config.reconcile_page_size,
        limit=limit,
        dry_run=bool(data.get('dry_run')),
    )
    app_ctx.logger.info(
        f"Reconcile requested by {decoded_token.get('uid', '')}: "
        f"scanned={result.scanned} repaired={result.repaired} failed={result.failed}"
    )
    return jsonify({'since': since, **result.to_dict()})
