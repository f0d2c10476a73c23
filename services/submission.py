"""
Submission Workflow for Pre-Trade Applications

Decides whether an incoming application is a new client, a blocked duplicate
or an authorised resubmission, then uploads the attachments, stores the
generated documents and emails the approver.
"""

import os
import re
import logging
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Dict, Any, List, Optional, Tuple
from urllib.parse import quote

from werkzeug.utils import secure_filename

from config import display_timezone
from .errors import BadRequest, DuplicateClient
from .email_notify import build_approval_url, render_approval_request
from .pdf_documents import (
    CLIENT_INFORMATION_FILE,
    TRACKING_FILE,
    build_tracking_entries,
    render_client_information,
    render_resubmission_tracking
)

logger = logging.getLogger(__name__)

# Submission states
NEW = 'new'
REJECTED = 'rejected'
RESUBMISSION = 'resubmission'

UNKNOWN_CLIENT = 'Unknown Client'

# Checked in order, first non-empty value names the client
CLIENT_NAME_FIELDS = ('fullName', 'repFullName', 'companyRegName')

# Characters not allowed in a storage path segment
ILLEGAL_PATH_CHARS = re.compile(r'[/\\?%*:|"<>]')

PDF_MIME_TYPE = 'application/pdf'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_folder_name(name: str) -> str:
    """Replace characters illegal in storage paths with '-'"""
    return ILLEGAL_PATH_CHARS.sub('-', name)


def resolve_client_name(fields: Dict[str, str]) -> str:
    for key in CLIENT_NAME_FIELDS:
        value = (fields.get(key) or '').strip()
        if value:
            return value
    return UNKNOWN_CLIENT


def new_folder_name(client_name: str, today: date) -> str:
    """<sanitized name>_<YYYY-MM-DD>"""
    return f"{sanitize_folder_name(client_name)}_{today.isoformat()}"


def application_type_label(fields: Dict[str, str]) -> str:
    """Application type shown to the approver"""
    if fields.get('applicationType'):
        return fields['applicationType']
    return 'Individual' if fields.get('applicantType') == 'individual' else 'Business'


def fallback_folder_url(site_url: str, library_name: str, folder_name: str) -> str:
    return f"{site_url.rstrip('/')}/{quote(library_name)}/{quote(folder_name)}"


def folder_link_from_uploads(uploaded_files: List[Dict[str, Any]], fallback: str) -> str:
    """Folder link: first uploaded file URL without its file name segment"""
    for result in uploaded_files:
        if result.get('url'):
            return result['url'].rsplit('/', 1)[0]
    return fallback


def serialize_folder(match: Dict[str, Any]) -> Dict[str, Any]:
    """Folder match as exposed by the API"""
    return {
        'name': match['name'],
        'createdDate': match.get('created_at'),
        'webUrl': match.get('url')
    }


def _parse_timestamp(value) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AttachedFile:
    """An uploaded attachment spooled to a request-scoped temp file"""

    def __init__(self, name: str, path: str):
        self.name = name
        self.path = path

    def discard(self):
        """Delete the temp copy; safe to call more than once"""
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Error cleaning up temp file {self.path}: {e}")

    def __repr__(self):
        return f"AttachedFile({self.name!r})"


class FormSubmission:
    """One application form: flat fields, attachments and an optional signature"""

    def __init__(
        self,
        fields: Dict[str, str],
        files: Optional[List[AttachedFile]] = None,
        signature_data: Optional[str] = None
    ):
        self.fields = fields
        self.files = files or []
        self.signature_data = signature_data or fields.get('signatureData') or None

    @property
    def client_name(self) -> str:
        return resolve_client_name(self.fields)

    @property
    def allow_duplicate(self) -> bool:
        return self.fields.get('allowDuplicate') == 'true'

    def cleanup(self):
        for attached in self.files:
            attached.discard()

    @classmethod
    def from_request(cls, request, tmp_dir: str = None, max_file_size: int = None) -> 'FormSubmission':
        """
        Parse a multipart form post.

        Every file part is spooled to a temp file; the caller owns cleanup.

        Raises:
            BadRequest: If no form data was sent or a file is too large
        """
        if not request.form and not request.files:
            raise BadRequest('No form data received')

        fields = request.form.to_dict(flat=True)
        files = []
        try:
            for key in request.files:
                for storage in request.files.getlist(key):
                    if not storage or not storage.filename:
                        continue
                    fd, path = tempfile.mkstemp(
                        prefix='upload_',
                        suffix=f"_{secure_filename(storage.filename)}",
                        dir=tmp_dir or None
                    )
                    os.close(fd)
                    attached = AttachedFile(storage.filename, path)
                    files.append(attached)
                    storage.save(path)

                    if max_file_size and os.path.getsize(path) > max_file_size:
                        raise BadRequest(
                            f"File {storage.filename} is too large. "
                            f"Maximum size is {max_file_size / (1024 * 1024):.0f}MB"
                        )
        except Exception:
            for attached in files:
                attached.discard()
            raise

        return cls(fields, files, fields.get('signatureData'))


class SubmissionWorkflow:
    """Runs one submission against the document store and notifier"""

    def __init__(self, store, notifier, settings, clock=None):
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.clock = clock or utcnow

    @property
    def display_tz(self) -> timezone:
        return display_timezone(self.settings)

    def check_duplicate(self, client_name: str) -> Dict[str, Any]:
        """Report folders already matching client_name"""
        logger.info(f"Checking for existing client: {client_name}")
        matches = self.store.find_folders(client_name)

        if matches:
            return {
                'exists': True,
                'message': f'Client "{client_name}" already exists',
                'existingFolders': [serialize_folder(m) for m in matches]
            }
        return {'exists': False, 'message': 'Client does not exist'}

    def resolve_folder(self, submission: FormSubmission) -> Tuple[str, Optional[str], List[Dict]]:
        """
        Decide the submission state.

        Returns:
            (state, folder_name, matches); folder_name is None when REJECTED
        """
        client_name = submission.client_name
        matches = self.store.find_folders(client_name)

        if not matches:
            return NEW, new_folder_name(client_name, self.clock().date()), matches
        if not submission.allow_duplicate:
            return REJECTED, None, matches
        # First match as returned by the store
        return RESUBMISSION, matches[0]['name'], matches

    def _upload_one(self, attached: AttachedFile, folder_name: str) -> Dict[str, Any]:
        try:
            url = self.store.upload_file(attached.path, attached.name, folder_name)
            logger.info(f"Uploaded: {attached.name}")
            return {'file': attached.name, 'url': url}
        except Exception as e:
            logger.error(f"Failed to upload: {attached.name} - {e}")
            return {'file': attached.name, 'error': str(e)}
        finally:
            attached.discard()

    def upload_files(self, files: List[AttachedFile], folder_name: str) -> List[Dict[str, Any]]:
        """Upload all attachments concurrently; one result per file, in input order"""
        if not files:
            return []

        workers = max(1, min(int(self.settings.get('UPLOAD_WORKERS', 4)), len(files)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(executor.map(lambda f: self._upload_one(f, folder_name), files))

    def update_tracking(self, folder_name: str, client_name: str, now: datetime) -> str:
        """Re-render the tracking document for a resubmission and overwrite it"""
        previous_created_at = None
        try:
            for item in self.store.list_children(folder_name):
                if item['name'] == TRACKING_FILE and item.get('created_at'):
                    previous_created_at = _parse_timestamp(item['created_at']).astimezone(now.tzinfo)
                    break
        except Exception as e:
            logger.info(f"Could not retrieve existing tracking data: {e}")

        entries = build_tracking_entries(True, previous_created_at, now)
        pdf = render_resubmission_tracking(
            client_name, entries, self.settings.get('PDF_LOGO_PATH')
        )
        return self.store.upload_content(pdf, TRACKING_FILE, folder_name, PDF_MIME_TYPE)

    def submit(self, submission: FormSubmission) -> Dict[str, Any]:
        """
        Run the full submission.

        Raises:
            DuplicateClient: Matching folders exist and the caller did not opt in
            OnboardingError / Exception: Any later step failed; nothing is rolled back
        """
        try:
            client_name = submission.client_name
            state, folder_name, matches = self.resolve_folder(submission)

            if state == REJECTED:
                logger.info(f"Duplicate blocked for {client_name}: {len(matches)} existing folder(s)")
                raise DuplicateClient(client_name, matches)

            logger.info(f"Processing {state.upper()} submission for: {folder_name}")
            logger.info(f"Number of files: {len(submission.files)}")

            # Every parallel upload below targets this one folder
            folder_url = self.store.ensure_folder(folder_name)

            uploaded_files = self.upload_files(submission.files, folder_name)

            folder_link = folder_link_from_uploads(
                uploaded_files,
                folder_url or fallback_folder_url(
                    self.settings.get('GDRIVE_SITE_URL', ''),
                    self.settings.get('GDRIVE_LIBRARY_NAME', ''),
                    folder_name
                )
            )
            logger.info(f"Client folder: {folder_link}")

            now = self.clock().astimezone(self.display_tz)

            pdf = render_client_information(
                submission.fields,
                folder_name,
                submission.signature_data,
                generated_at=now,
                logo_path=self.settings.get('PDF_LOGO_PATH')
            )
            self.store.upload_content(pdf, CLIENT_INFORMATION_FILE, folder_name, PDF_MIME_TYPE)
            logger.info("Client information PDF uploaded")

            if state == RESUBMISSION:
                self.update_tracking(folder_name, client_name, now)
                logger.info("Resubmission tracking PDF uploaded")

            subject, html_body, text_body = render_approval_request(
                client_name=client_name,
                application_type=application_type_label(submission.fields),
                folder_link=folder_link,
                client_folder=folder_name,
                approval_url=build_approval_url(self.settings.get('BASE_URL', ''), folder_name),
                submitted_at=now
            )
            self.notifier.notify(subject, html_body, text_body)
            logger.info("Approval email sent")

            return {
                'success': True,
                'message': 'Application submitted successfully',
                'clientFolder': folder_name,
                'uploadedFiles': uploaded_files,
                'sharePointLink': folder_link
            }
        finally:
            submission.cleanup()
