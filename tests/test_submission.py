import io

import pytest

from services import submission as submission_module
from services.drive_store import DriveStore
from services import errors
from services.errors import BadRequest, DuplicateClient
from services.pdf_documents import CLIENT_INFORMATION_FILE, TRACKING_FILE
from services.submission import (
    NEW,
    REJECTED,
    RESUBMISSION,
    UNKNOWN_CLIENT,
    AttachedFile,
    FormSubmission,
    SubmissionWorkflow,
    application_type_label,
    fallback_folder_url,
    folder_link_from_uploads,
    new_folder_name,
    resolve_client_name,
    sanitize_folder_name,
)
from tests.conftest import FIXED_NOW, FakeStore, InMemoryDrive, fixed_clock


def _attach(directory, name, content=b"document"):
    path = directory / f"upload_{name}"
    path.write_bytes(content)
    return AttachedFile(name, str(path))


def _workflow(store, notifier, settings):
    return SubmissionWorkflow(store, notifier, settings, fixed_clock)


EXISTING = {
    'name': 'Jane Doe_2024-11-02',
    'created_at': '2024-11-02T08:15:00Z',
    'url': 'https://drive.example.com/folders/abc',
}


# ========== Naming ==========

def test_sanitize_replaces_illegal_characters():
    assert sanitize_folder_name('Acme/Gold: <SA>') == 'Acme-Gold- -SA-'
    assert sanitize_folder_name('a?b*c|d%e\\f"g') == 'a-b-c-d-e-f-g'


def test_sanitize_is_idempotent():
    for name in ['Jane Doe', 'A/B\\C', 'x?y%z*:|"<>', '']:
        once = sanitize_folder_name(name)
        assert sanitize_folder_name(once) == once


def test_client_name_prefers_full_name_then_representative_then_company():
    assert resolve_client_name({'fullName': 'Jane', 'repFullName': 'Rep', 'companyRegName': 'Co'}) == 'Jane'
    assert resolve_client_name({'fullName': '  ', 'repFullName': 'Rep', 'companyRegName': 'Co'}) == 'Rep'
    assert resolve_client_name({'companyRegName': 'Co'}) == 'Co'
    assert resolve_client_name({}) == UNKNOWN_CLIENT


def test_new_folder_name_appends_date():
    assert new_folder_name('Jane Doe', FIXED_NOW.date()) == 'Jane Doe_2025-03-01'
    assert new_folder_name('A/B Trading', FIXED_NOW.date()) == 'A-B Trading_2025-03-01'


def test_application_type_label_defaults_from_applicant_type():
    assert application_type_label({'applicationType': 'Corporate'}) == 'Corporate'
    assert application_type_label({'applicantType': 'individual'}) == 'Individual'
    assert application_type_label({'applicantType': 'business'}) == 'Business'
    assert application_type_label({}) == 'Business'


def test_folder_link_strips_file_segment_and_skips_failures():
    uploads = [
        {'file': 'a.pdf', 'error': 'boom'},
        {'file': 'b.pdf', 'url': 'https://drive.example.com/Jane/b.pdf'},
    ]
    assert folder_link_from_uploads(uploads, 'fallback') == 'https://drive.example.com/Jane'
    assert folder_link_from_uploads([{'file': 'a.pdf', 'error': 'boom'}], 'fallback') == 'fallback'
    assert folder_link_from_uploads([], 'fallback') == 'fallback'


def test_fallback_folder_url_quotes_segments():
    url = fallback_folder_url('https://drive.google.com/drive/', 'Gold Clients', 'Jane Doe_2025-03-01')
    assert url == 'https://drive.google.com/drive/Gold%20Clients/Jane%20Doe_2025-03-01'


# ========== State decision ==========

def test_name_match_is_case_insensitive_substring():
    store = FakeStore(folders=[{'name': 'ACME Holdings_2024-01-01'}])
    assert [m['name'] for m in store.find_folders('Acme')] == ['ACME Holdings_2024-01-01']


def test_resolve_folder_states(notifier, settings):
    workflow = _workflow(FakeStore(), notifier, settings)
    assert workflow.resolve_folder(FormSubmission({'fullName': 'Jane Doe'}))[:2] == (NEW, 'Jane Doe_2025-03-01')

    workflow = _workflow(FakeStore(folders=[EXISTING]), notifier, settings)
    state, folder, matches = workflow.resolve_folder(FormSubmission({'fullName': 'Jane Doe'}))
    assert (state, folder) == (REJECTED, None)
    assert len(matches) == 1

    state, folder, _ = workflow.resolve_folder(
        FormSubmission({'fullName': 'Jane Doe', 'allowDuplicate': 'true'})
    )
    assert (state, folder) == (RESUBMISSION, EXISTING['name'])


def test_allow_duplicate_requires_literal_true(notifier, settings):
    workflow = _workflow(FakeStore(folders=[EXISTING]), notifier, settings)
    state, _, _ = workflow.resolve_folder(FormSubmission({'fullName': 'Jane Doe', 'allowDuplicate': 'yes'}))
    assert state == REJECTED


def test_check_duplicate_reports_matches(notifier, settings):
    workflow = _workflow(FakeStore(folders=[EXISTING]), notifier, settings)

    found = workflow.check_duplicate('jane')
    assert found['exists'] is True
    assert found['existingFolders'] == [{
        'name': EXISTING['name'],
        'createdDate': EXISTING['created_at'],
        'webUrl': EXISTING['url'],
    }]

    missing = workflow.check_duplicate('Someone Else')
    assert missing == {'exists': False, 'message': 'Client does not exist'}


# ========== Full submission ==========

def test_new_submission_uploads_files_document_and_sends_email(tmp_path, store, notifier, settings):
    files = [_attach(tmp_path, 'passport.pdf'), _attach(tmp_path, 'proof.png')]
    submission = FormSubmission({'fullName': 'Jane Doe', 'applicantType': 'individual'}, files)

    result = _workflow(store, notifier, settings).submit(submission)

    assert result['success'] is True
    assert result['clientFolder'] == 'Jane Doe_2025-03-01'
    assert [r['file'] for r in result['uploadedFiles']] == ['passport.pdf', 'proof.png']
    assert result['sharePointLink'] == 'https://drive.example.com/Jane Doe_2025-03-01'
    # Folder exists before any upload starts
    assert store.ensured == [('Jane Doe_2025-03-01', 0)]

    documents = store.files_named(CLIENT_INFORMATION_FILE)
    assert len(documents) == 1
    assert documents[0]['content'].startswith(b'%PDF')
    assert store.files_named(TRACKING_FILE) == []

    assert len(notifier.sent) == 1
    assert notifier.sent[0]['subject'] == 'New Individual Application for Approval - Jane Doe'
    assert 'https://onboarding.example.com/api/approve?client=Jane%20Doe_2025-03-01' in notifier.sent[0]['html_body']
    assert 'Approve application: https://onboarding.example.com/api/approve?client=Jane%20Doe_2025-03-01' in notifier.sent[0]['text_body']

    assert not any(p.name.startswith('upload_') for p in tmp_path.iterdir())


def test_rejected_duplicate_uploads_nothing_and_removes_temp_files(tmp_path, notifier, settings):
    store = FakeStore(folders=[EXISTING])
    files = [_attach(tmp_path, 'passport.pdf')]

    with pytest.raises(DuplicateClient) as excinfo:
        _workflow(store, notifier, settings).submit(FormSubmission({'fullName': 'Jane Doe'}, files))

    assert excinfo.value.status_code == 409
    assert excinfo.value.matches[0]['name'] == EXISTING['name']
    assert str(excinfo.value) == 'A client named "Jane Doe" already exists'
    assert store.uploads == []
    assert notifier.sent == []
    assert not any(p.name.startswith('upload_') for p in tmp_path.iterdir())


def test_duplicate_client_is_the_only_conflict_error():
    conflicts = [
        name for name, obj in vars(errors).items()
        if isinstance(obj, type) and getattr(obj, 'status_code', None) == 409
    ]
    assert conflicts == ['DuplicateClient']


def test_resubmission_reuses_existing_folder_and_writes_tracking(tmp_path, notifier, settings, monkeypatch):
    store = FakeStore(
        folders=[EXISTING],
        children={EXISTING['name']: [{'name': TRACKING_FILE, 'created_at': '2024-11-02T08:15:00Z'}]}
    )
    captured = {}
    original = submission_module.render_resubmission_tracking

    def _capture(client_name, entries, logo_path=None):
        captured['entries'] = entries
        return original(client_name, entries, logo_path)

    monkeypatch.setattr(submission_module, 'render_resubmission_tracking', _capture)

    result = _workflow(store, notifier, settings).submit(
        FormSubmission({'fullName': 'Jane Doe', 'allowDuplicate': 'true'}, [_attach(tmp_path, 'id.pdf')])
    )

    assert result['clientFolder'] == EXISTING['name']
    assert {u['folder'] for u in store.uploads} == {EXISTING['name']}
    assert len(store.files_named(TRACKING_FILE)) == 1
    # Earlier entries are not carried forward, only the synthesized original
    assert captured['entries'] == [
        {'date': '2024-11-02', 'note': 'Original submission'},
        {'date': '2025-03-01 12:30:00', 'note': 'Resubmission - Information updated'},
    ]


def test_resubmission_tracking_survives_listing_failure(notifier, settings):
    store = FakeStore(folders=[EXISTING])
    store.fail_listing = True

    _workflow(store, notifier, settings).submit(
        FormSubmission({'fullName': 'Jane Doe', 'allowDuplicate': 'true'})
    )

    assert len(store.files_named(TRACKING_FILE)) == 1
    assert len(notifier.sent) == 1


def test_partial_upload_failure_still_completes(tmp_path, store, notifier, settings):
    store.fail_files = {'broken.pdf'}
    files = [
        _attach(tmp_path, 'a.pdf'),
        _attach(tmp_path, 'broken.pdf'),
        _attach(tmp_path, 'c.pdf'),
    ]

    result = _workflow(store, notifier, settings).submit(
        FormSubmission({'repFullName': 'Rep Person', 'applicantType': 'business'}, files)
    )

    uploaded = result['uploadedFiles']
    assert len(uploaded) == 3
    assert [('url' in r, 'error' in r) for r in uploaded] == [(True, False), (False, True), (True, False)]
    assert 'quota exceeded' in uploaded[1]['error']
    assert len(store.files_named(CLIENT_INFORMATION_FILE)) == 1
    assert len(notifier.sent) == 1
    assert not any(p.name.startswith('upload_') for p in tmp_path.iterdir())


def test_no_successful_upload_links_to_created_folder(store, notifier, settings):
    result = _workflow(store, notifier, settings).submit(FormSubmission({'fullName': 'Jane Doe'}))

    assert result['uploadedFiles'] == []
    assert result['sharePointLink'] == 'https://drive.example.com/Jane Doe_2025-03-01'


def test_no_folder_link_uses_configured_site_url(store, notifier, settings):
    store.folder_urls = False

    result = _workflow(store, notifier, settings).submit(FormSubmission({'fullName': 'Jane Doe'}))

    assert result['sharePointLink'] == (
        'https://drive.google.com/drive/Gold%20Pre-Trade%20Clients/Jane%20Doe_2025-03-01'
    )


def test_parallel_uploads_share_one_drive_folder(tmp_path, notifier, settings, monkeypatch):
    drive = InMemoryDrive()
    store = DriveStore('Gold Pre-Trade Clients')
    monkeypatch.setattr(store, '_service', lambda: drive)
    files = [_attach(tmp_path, f"doc{i}.pdf") for i in range(3)]

    result = _workflow(store, notifier, settings).submit(
        FormSubmission({'fullName': 'Jane Doe'}, files)
    )

    folders = drive.folders_named('Jane Doe_2025-03-01')
    assert len(folders) == 1
    folder_id = folders[0]['id']
    assert sorted(i['name'] for i in drive.files_in(folder_id)) == [
        CLIENT_INFORMATION_FILE, 'doc0.pdf', 'doc1.pdf', 'doc2.pdf'
    ]
    assert result['sharePointLink'] == f"https://drive.google.com/drive/folders/{folder_id}"
    assert all('error' not in r for r in result['uploadedFiles'])


def test_notify_failure_propagates_after_documents_stored(store, notifier, settings):
    notifier.fail = 'SMTP error: connection refused'

    with pytest.raises(Exception, match='connection refused'):
        _workflow(store, notifier, settings).submit(FormSubmission({'fullName': 'Jane Doe'}))

    assert len(store.files_named(CLIENT_INFORMATION_FILE)) == 1


# ========== Form parsing ==========

def test_from_request_spools_files_and_reads_fields(app, upload_dir):
    data = {
        'fullName': 'Jane Doe',
        'allowDuplicate': 'true',
        'files': [(io.BytesIO(b'one'), 'passport.pdf'), (io.BytesIO(b'two'), 'proof.png')],
    }
    with app.test_request_context('/api/submit', method='POST', data=data,
                                  content_type='multipart/form-data') as ctx:
        submission = FormSubmission.from_request(ctx.request, str(upload_dir), 1024)

    assert submission.client_name == 'Jane Doe'
    assert submission.allow_duplicate is True
    assert [f.name for f in submission.files] == ['passport.pdf', 'proof.png']
    for attached in submission.files:
        assert attached.path.startswith(str(upload_dir))

    submission.cleanup()
    assert list(upload_dir.iterdir()) == []


def test_from_request_rejects_oversized_file_and_cleans_up(app, upload_dir):
    data = {
        'fullName': 'Jane Doe',
        'files': [(io.BytesIO(b'small'), 'ok.pdf'), (io.BytesIO(b'x' * 2048), 'huge.pdf')],
    }
    with app.test_request_context('/api/submit', method='POST', data=data,
                                  content_type='multipart/form-data') as ctx:
        with pytest.raises(BadRequest, match='huge.pdf'):
            FormSubmission.from_request(ctx.request, str(upload_dir), 1024)

    assert list(upload_dir.iterdir()) == []


def test_from_request_without_form_data(app):
    with app.test_request_context('/api/submit', method='POST') as ctx:
        with pytest.raises(BadRequest, match='No form data received'):
            FormSubmission.from_request(ctx.request)
