"""
Pre-Trade Onboarding - Main Application
Receives client applications, stores them in the document library and
handles the approver's one-click approval.
"""

import os
import logging
from datetime import datetime, timezone

import click
from flask import (
    Blueprint, Flask, current_app, jsonify, render_template, request
)
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import Config, REQUIRED_ENV_VARS
from services import (
    ApprovalWorkflow,
    BadRequest,
    DriveStore,
    DuplicateClient,
    EmailNotifier,
    FormSubmission,
    SubmissionWorkflow,
    authorize_drive
)
from services.submission import serialize_folder

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

api = Blueprint('api', __name__)


def _gateways():
    return current_app.extensions['onboarding']


def _submission_workflow() -> SubmissionWorkflow:
    gateways = _gateways()
    return SubmissionWorkflow(
        gateways['store'], gateways['notifier'], current_app.config, gateways['clock']
    )


def _approval_workflow() -> ApprovalWorkflow:
    gateways = _gateways()
    return ApprovalWorkflow(gateways['store'], current_app.config, gateways['clock'])


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# ========== Submission ==========

@api.route('/api/check-duplicate', methods=['POST'])
def check_duplicate():
    """API: Check whether a client folder already exists"""
    data = request.get_json(silent=True) or request.form
    client_name = (data.get('clientName') or '').strip()

    if not client_name:
        return jsonify({'error': 'Client name is required'}), 400

    try:
        return jsonify(_submission_workflow().check_duplicate(client_name))
    except Exception as e:
        logger.exception(f"Error checking duplicate for {client_name}")
        return jsonify({'error': f'Error checking for duplicate client: {e}'}), 500


@api.route('/api/submit', methods=['POST'])
def submit():
    """API: Accept a full application form with attachments"""
    logger.info("Starting form submission processing")

    try:
        submission = FormSubmission.from_request(
            request,
            tmp_dir=current_app.config.get('UPLOAD_TMP_DIR'),
            max_file_size=current_app.config.get('MAX_FILE_SIZE')
        )
    except BadRequest as e:
        logger.warning(f"Rejected form: {e}")
        return jsonify({'success': False, 'message': str(e)}), 400

    try:
        return jsonify(_submission_workflow().submit(submission))

    except DuplicateClient as e:
        return jsonify({
            'success': False,
            'duplicate': True,
            'message': str(e),
            'existingFolders': [serialize_folder(m) for m in e.matches]
        }), 409

    except Exception as e:
        logger.exception("Error processing submission")
        return jsonify({
            'success': False,
            'message': f'Error processing submission: {e}'
        }), 500


# ========== Approval ==========

@api.route('/api/approve', methods=['GET'])
def approve():
    """Approval link target: issue the Legal Approval certificate"""
    client_folder = request.args.get('client', '')

    if not client_folder.strip():
        return render_template('approval/error.html', message='Invalid approval link'), 400

    try:
        result = _approval_workflow().approve(client_folder)
    except Exception as e:
        logger.exception(f"Error processing approval for {client_folder}")
        return render_template('approval/error.html', message=str(e)), 500

    return render_template(
        'approval/approved.html',
        client_folder=client_folder,
        folder_url=result['folder_url']
    )


# ========== Diagnostics ==========

@api.route('/api/diagnostics', methods=['GET'])
def diagnostics():
    """Report liveness and which required variables are set (never their values)"""
    return jsonify({
        'status': 'OK',
        'timestamp': _timestamp(),
        'environment': os.environ.get('FLASK_ENV', 'development'),
        'demo_mode': current_app.config.get('DEMO_MODE', False),
        'env_vars_present': {name: bool(os.environ.get(name)) for name in REQUIRED_ENV_VARS}
    })


@api.route('/api/diagnostics/drives', methods=['GET'])
def diagnostics_drives():
    """List the shared drives visible to the configured credentials"""
    try:
        drives = _gateways()['store'].list_drives()
    except Exception as e:
        logger.exception("Error listing drives")
        return jsonify({'status': 'error', 'message': str(e)}), 500

    return jsonify({
        'status': 'OK',
        'library': current_app.config.get('GDRIVE_LIBRARY_NAME'),
        'drives': drives
    })


@api.route('/health', methods=['GET'])
def health():
    """Health check endpoint"""
    config = current_app.config
    return jsonify({
        'status': 'OK',
        'timestamp': _timestamp(),
        'config': {
            'siteUrl': config.get('GDRIVE_SITE_URL'),
            'documentLibrary': config.get('GDRIVE_LIBRARY_NAME'),
            'emailFrom': config.get('SMTP_FROM')
        }
    })


# ========== Application Factory ==========

def _register_error_handlers(app: Flask):

    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith('/api/'):
            return jsonify({'error': 'Endpoint not found'}), 404
        return e

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({'error': 'Method not allowed'}), 405

    @app.errorhandler(413)
    def too_large(e):
        max_size_mb = app.config['MAX_CONTENT_LENGTH'] / (1024 * 1024)
        return jsonify({
            'success': False,
            'message': f'Request too large. Maximum size is {max_size_mb:.0f}MB'
        }), 413

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Catch-all exception handler for API endpoints"""
        if isinstance(e, HTTPException):
            return e
        logger.error(f'Unhandled exception: {e}', exc_info=True)
        if request.path.startswith('/api/'):
            status = getattr(e, 'status_code', 500)
            return jsonify({'success': False, 'message': str(e)}), status
        raise e


def create_app(test_config=None, store=None, notifier=None, clock=None) -> Flask:
    """
    Build the application.

    Args:
        test_config: Mapping applied over Config
        store: Document store, built from config when omitted
        notifier: Approval notifier, built from config when omitted
        clock: Callable returning the current UTC datetime
    """
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    CORS(
        app,
        origins=app.config['CORS_ORIGINS'],
        methods=['GET', 'POST', 'OPTIONS'],
        allow_headers=['Content-Type']
    )

    app.extensions['onboarding'] = {
        'store': store or DriveStore.from_config(app.config),
        'notifier': notifier or EmailNotifier.from_config(app.config),
        'clock': clock
    }

    app.register_blueprint(api)
    _register_error_handlers(app)

    @app.after_request
    def add_security_headers(response):
        """Add security headers to all responses"""
        response.headers['X-Frame-Options'] = 'SAMEORIGIN'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        return response

    @app.cli.command('authorize-drive')
    def authorize_drive_command():
        """Run the Google OAuth consent flow and save the Drive token."""
        token_path = authorize_drive(
            app.config['GDRIVE_CREDENTIALS_PATH'], app.config['GDRIVE_TOKEN_PATH']
        )
        click.echo(f"Drive token saved to {token_path}")

    logger.info(
        f"App initialized - library: {app.config['GDRIVE_LIBRARY_NAME']}, "
        f"demo_mode: {app.config['DEMO_MODE']}"
    )
    return app


# ========== Main ==========

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_ENV', 'development') == 'development'
    create_app().run(host='0.0.0.0', port=port, debug=debug)
