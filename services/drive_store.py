"""
Google Drive Document Store
Keeps every client's onboarding documents in a per-client folder inside a
single document library (a top-level Drive folder, optionally on a shared drive).

Supports both live mode (service account or OAuth token) and demo mode
(no network calls) for local demonstrations.
"""

import io
import os
import json
import logging
import mimetypes
import threading
from datetime import datetime
from typing import Dict, List, Optional, Any
from urllib.parse import quote

from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build
from googleapiclient.http import MediaFileUpload, MediaIoBaseUpload

from .errors import StoreUnavailable, UploadFailed

logger = logging.getLogger(__name__)

# Full drive scope: client folders are searched by name, including ones
# created outside this service
SCOPES = ['https://www.googleapis.com/auth/drive']

FOLDER_MIME_TYPE = 'application/vnd.google-apps.folder'

FOLDER_URL = 'https://drive.google.com/drive/folders/{folder_id}'

# Lock stripes serializing folder creation per folder name
FOLDER_LOCK_STRIPES = 32


def _quote(value: str) -> str:
    """Escape a literal for use inside a Drive query string"""
    return value.replace('\\', '\\\\').replace("'", "\\'")


class DriveStore:
    """Document store backed by a Google Drive folder"""

    def __init__(
        self,
        library_name: str,
        shared_drive_id: str = None,
        service_account_file: str = None,
        token_path: str = None,
        token_json: str = None,
        demo_mode: bool = False
    ):
        self.library_name = library_name
        self.shared_drive_id = shared_drive_id or None
        self.service_account_file = service_account_file or None
        self.token_path = token_path or None
        self.token_json = token_json or None
        self.demo_mode = demo_mode
        self._creds = None
        self._creds_lock = threading.Lock()
        self._folder_locks = [threading.Lock() for _ in range(FOLDER_LOCK_STRIPES)]

        if self.demo_mode:
            logger.info("Drive store running in DEMO MODE - documents will be logged but not uploaded")

    @classmethod
    def from_config(cls, config) -> 'DriveStore':
        return cls(
            library_name=config['GDRIVE_LIBRARY_NAME'],
            shared_drive_id=config.get('GDRIVE_SHARED_DRIVE_ID'),
            service_account_file=config.get('GDRIVE_SERVICE_ACCOUNT_FILE'),
            token_path=config.get('GDRIVE_TOKEN_PATH'),
            token_json=config.get('GDRIVE_TOKEN'),
            demo_mode=config.get('DEMO_MODE', False)
        )

    # ========== Authentication ==========

    def _load_credentials(self):
        """Load service-account or authorized-user credentials, refreshing if expired"""
        if self.service_account_file:
            return service_account.Credentials.from_service_account_file(
                self.service_account_file, scopes=SCOPES
            )

        if self.token_json:
            creds = Credentials.from_authorized_user_info(json.loads(self.token_json), SCOPES)
        elif self.token_path and os.path.exists(self.token_path):
            creds = Credentials.from_authorized_user_file(self.token_path, SCOPES)
        else:
            raise StoreUnavailable(
                "No Google Drive credentials found. "
                "Set GDRIVE_SERVICE_ACCOUNT_FILE, GDRIVE_TOKEN or run 'flask authorize-drive'"
            )

        if not creds.valid and creds.expired and creds.refresh_token:
            logger.info("Refreshing expired Drive credentials")
            creds.refresh(Request())
        return creds

    def _service(self):
        """Build a Drive client for one call; clients are not shared between threads"""
        with self._creds_lock:
            if self._creds is None or not self._creds.valid:
                self._creds = self._load_credentials()
            creds = self._creds
        return build('drive', 'v3', credentials=creds, cache_discovery=False)

    def _list_kwargs(self) -> Dict[str, Any]:
        if self.shared_drive_id:
            return {
                'corpora': 'drive',
                'driveId': self.shared_drive_id,
                'includeItemsFromAllDrives': True,
                'supportsAllDrives': True
            }
        return {'spaces': 'drive'}

    # ========== Lookups ==========

    def _find_child(self, service, parent_id: str, name: str, folders_only: bool = False) -> Optional[Dict]:
        query = f"name='{_quote(name)}' and '{parent_id}' in parents and trashed=false"
        if folders_only:
            query += f" and mimeType='{FOLDER_MIME_TYPE}'"

        results = service.files().list(
            q=query,
            fields='files(id, name, createdTime, webViewLink)',
            **self._list_kwargs()
        ).execute()

        files = results.get('files', [])
        return files[0] if files else None

    def _resolve_library(self, service) -> Optional[str]:
        """Resolve the library folder ID by name; re-resolved on every call"""
        root_id = self.shared_drive_id or 'root'
        library = self._find_child(service, root_id, self.library_name, folders_only=True)
        if not library:
            logger.warning(f"Document library '{self.library_name}' not found")
            return None
        return library['id']

    def _list_folder(self, service, parent_id: str, folders_only: bool = False) -> List[Dict]:
        query = f"'{parent_id}' in parents and trashed=false"
        if folders_only:
            query += f" and mimeType='{FOLDER_MIME_TYPE}'"

        items = []
        page_token = None
        while True:
            results = service.files().list(
                q=query,
                fields='nextPageToken, files(id, name, mimeType, createdTime, webViewLink)',
                pageSize=1000,
                pageToken=page_token,
                **self._list_kwargs()
            ).execute()
            items.extend(results.get('files', []))
            page_token = results.get('nextPageToken')
            if not page_token:
                return items

    def _folder_lock(self, folder_name: str) -> threading.Lock:
        return self._folder_locks[hash(folder_name) % len(self._folder_locks)]

    def _get_or_create_folder(self, service, folder_name: str, parent_id: str) -> str:
        """Get existing folder or create new one, return folder ID"""
        # Drive allows duplicate names: find-then-create must not interleave
        with self._folder_lock(folder_name):
            existing = self._find_child(service, parent_id, folder_name, folders_only=True)
            if existing:
                return existing['id']

            file_metadata = {
                'name': folder_name,
                'mimeType': FOLDER_MIME_TYPE,
                'parents': [parent_id]
            }
            folder = service.files().create(
                body=file_metadata,
                fields='id',
                supportsAllDrives=True
            ).execute()

        folder_id = folder.get('id')
        logger.info(f"Created folder: {folder_name} ({folder_id})")
        return folder_id

    def find_folders(self, name_query: str) -> List[Dict[str, Any]]:
        """
        Find client folders whose name contains name_query (case-insensitive).

        A store that cannot be reached is reported as "no match".

        Returns:
            List of dicts with name, created_at and url
        """
        if self.demo_mode:
            logger.info(f"[DEMO] Would search folders matching: {name_query}")
            return []

        try:
            service = self._service()
            library_id = self._resolve_library(service)
            if not library_id:
                logger.info("Document library not found, no existing clients")
                return []

            needle = name_query.lower()
            return [
                {
                    'name': item['name'],
                    'created_at': item.get('createdTime'),
                    'url': item.get('webViewLink')
                }
                for item in self._list_folder(service, library_id, folders_only=True)
                if needle in item['name'].lower()
            ]

        except Exception as e:
            logger.error(f"Error searching for existing client {name_query}: {e}")
            return []

    def list_children(self, folder_name: str) -> List[Dict[str, Any]]:
        """
        List the files in a client folder.

        Returns:
            List of dicts with name and created_at (empty if the folder is missing)

        Raises:
            StoreUnavailable: If the library cannot be reached
        """
        if self.demo_mode:
            logger.info(f"[DEMO] Would list folder: {folder_name}")
            return []

        try:
            service = self._service()
            library_id = self._resolve_library(service)
            if not library_id:
                raise StoreUnavailable(f"Document library '{self.library_name}' not found")

            folder = self._find_child(service, library_id, folder_name, folders_only=True)
            if not folder:
                return []

            return [
                {'name': item['name'], 'created_at': item.get('createdTime')}
                for item in self._list_folder(service, folder['id'])
            ]

        except StoreUnavailable:
            raise
        except Exception as e:
            raise StoreUnavailable(f"Could not list folder {folder_name}: {e}") from e

    # ========== Uploads ==========

    def _client_folder(self, service, folder_name: str) -> str:
        library_id = self._resolve_library(service)
        if not library_id:
            raise UploadFailed('Document library not found')
        return self._get_or_create_folder(service, folder_name, library_id)

    def ensure_folder(self, folder_name: str) -> str:
        """
        Create folder_name in the library if absent.

        Returns:
            Web link of the client folder

        Raises:
            UploadFailed: On any transport, auth or library error
        """
        if self.demo_mode:
            logger.info(f"[DEMO] Would create folder: {folder_name}")
            return f"demo://{folder_name}"

        try:
            folder_id = self._client_folder(self._service(), folder_name)
        except UploadFailed:
            raise
        except Exception as e:
            logger.error(f"Error creating folder {folder_name}: {e}")
            raise UploadFailed(str(e)) from e

        return FOLDER_URL.format(folder_id=folder_id)

    def _put(self, media, file_name: str, folder_name: str) -> str:
        """
        Create or overwrite file_name inside folder_name.

        Returns:
            <folder web link>/<quoted file name>; dropping the last segment
            yields the client folder link
        """
        service = self._service()
        folder_id = self._client_folder(service, folder_name)
        existing = self._find_child(service, folder_id, file_name)

        if existing:
            file = service.files().update(
                fileId=existing['id'],
                media_body=media,
                fields='id, name',
                supportsAllDrives=True
            ).execute()
            logger.info(f"Overwrote file: {folder_name}/{file_name} ({file.get('id')})")
        else:
            file = service.files().create(
                body={'name': file_name, 'parents': [folder_id]},
                media_body=media,
                fields='id, name',
                supportsAllDrives=True
            ).execute()
            logger.info(f"Uploaded file: {folder_name}/{file_name} ({file.get('id')})")

        return f"{FOLDER_URL.format(folder_id=folder_id)}/{quote(file_name, safe='')}"

    def upload_content(
        self,
        content: bytes,
        file_name: str,
        folder_name: str,
        mime_type: str = 'application/octet-stream'
    ) -> str:
        """
        Upload content (bytes) to the client folder

        Args:
            content: File content as bytes
            file_name: Name of the file in the folder (overwritten if present)
            folder_name: Client folder, created if absent
            mime_type: MIME type of the content

        Returns:
            <folder web link>/<file name> (see _put)

        Raises:
            UploadFailed: On any transport, auth or library error
        """
        if self.demo_mode:
            logger.info(f"[DEMO] Would upload content: {folder_name}/{file_name} ({len(content)} bytes)")
            return f"demo://{folder_name}/{file_name}"

        try:
            media = MediaIoBaseUpload(io.BytesIO(content), mimetype=mime_type)
            return self._put(media, file_name, folder_name)
        except UploadFailed:
            raise
        except Exception as e:
            logger.error(f"Error uploading content {file_name}: {e}")
            raise UploadFailed(str(e)) from e

    def upload_file(self, file_path: str, file_name: str, folder_name: str) -> str:
        """Upload a local file to the client folder; see upload_content"""
        if self.demo_mode:
            logger.info(f"[DEMO] Would upload file: {folder_name}/{file_name}")
            return f"demo://{folder_name}/{file_name}"

        try:
            mime_type, _ = mimetypes.guess_type(file_name)
            media = MediaFileUpload(file_path, mimetype=mime_type or 'application/octet-stream')
            return self._put(media, file_name, folder_name)
        except UploadFailed:
            raise
        except Exception as e:
            logger.error(f"Error uploading file {file_name}: {e}")
            raise UploadFailed(str(e)) from e

    # ========== Diagnostics ==========

    def list_drives(self) -> List[Dict[str, Any]]:
        """List the shared drives visible to the configured credentials"""
        if self.demo_mode:
            return [{'name': self.library_name, 'id': 'demo-drive'}]

        try:
            service = self._service()
            results = service.drives().list(pageSize=100, fields='drives(id, name)').execute()
        except StoreUnavailable:
            raise
        except Exception as e:
            raise StoreUnavailable(f"Could not list drives: {e}") from e

        return [{'name': d['name'], 'id': d['id']} for d in results.get('drives', [])]


def authorize_drive(credentials_path: str, token_path: str) -> str:
    """
    Run the OAuth consent flow once and save the authorized-user token.

    Returns:
        Path the token was written to
    """
    flow = InstalledAppFlow.from_client_secrets_file(credentials_path, SCOPES)
    creds = flow.run_local_server(port=0)

    os.makedirs(os.path.dirname(token_path) or '.', exist_ok=True)
    with open(token_path, 'w') as token:
        token.write(creds.to_json())
    logger.info(f"OAuth token saved to {token_path} at {datetime.now().isoformat()}")
    return token_path
