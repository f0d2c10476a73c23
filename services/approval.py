"""
Approval Workflow

Issues the Legal Approval certificate for a client folder when the approver
follows the link in the approval email.
"""

import logging
from typing import Dict, Any

from config import display_timezone
from .errors import BadRequest
from .pdf_documents import APPROVAL_FILE, approval_reference, render_approval_certificate
from .submission import PDF_MIME_TYPE, utcnow

logger = logging.getLogger(__name__)


class ApprovalWorkflow:
    """Renders and stores the approval certificate"""

    def __init__(self, store, settings, clock=None):
        self.store = store
        self.settings = settings
        self.clock = clock or utcnow

    def approve(self, folder_name: str) -> Dict[str, Any]:
        """
        Approve a client folder.

        Approving the same folder twice overwrites the certificate with a new
        reference and date.

        Raises:
            BadRequest: If folder_name is empty
            UploadFailed: If the certificate could not be stored
        """
        if not folder_name or not folder_name.strip():
            raise BadRequest('Invalid approval link')

        logger.info(f"Processing approval for: {folder_name}")

        now = self.clock()
        reference = approval_reference(now)
        pdf = render_approval_certificate(
            folder_name,
            reference,
            now.astimezone(display_timezone(self.settings)),
            logo_path=self.settings.get('PDF_LOGO_PATH')
        )

        url = self.store.upload_content(pdf, APPROVAL_FILE, folder_name, PDF_MIME_TYPE)
        logger.info(f"Approval PDF uploaded for {folder_name}: {url}")

        return {
            'client_folder': folder_name,
            'reference': reference,
            'document_url': url,
            'folder_url': url.rsplit('/', 1)[0]
        }
