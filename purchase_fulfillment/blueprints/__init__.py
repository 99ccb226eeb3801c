from .payments import payments_bp
from .entitlements import entitlements_bp
from .admin import admin_bp

__all__ = ['payments_bp', 'entitlements_bp', 'admin_bp']
