"""
Routes package
Đăng ký tất cả các blueprints
"""
from .api_verification import verification_api_bp
from .api_cache import cache_api_bp
from .api_codes import codes_api_bp


def register_blueprints(app):
    """Đăng ký tất cả các blueprints với Flask app."""
    # Verification session routes
    app.register_blueprint(verification_api_bp)

    # Descriptor cache routes
    app.register_blueprint(cache_api_bp)

    # Staff-facing code issuance
    app.register_blueprint(codes_api_bp)

    app.logger.info("✅ Đã đăng ký tất cả blueprints")
