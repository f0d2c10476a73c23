# Services package for the Pre-Trade Onboarding service
from .errors import (
    OnboardingError,
    BadRequest,
    DuplicateClient,
    GatewayFailure,
    StoreUnavailable,
    UploadFailed,
    NotifyFailed,
    RenderFailure
)
from .drive_store import DriveStore, authorize_drive
from .email_notify import EmailNotifier
from .submission import FormSubmission, SubmissionWorkflow
from .approval import ApprovalWorkflow

__all__ = [
    'OnboardingError',
    'BadRequest',
    'DuplicateClient',
    'GatewayFailure',
    'StoreUnavailable',
    'UploadFailed',
    'NotifyFailed',
    'RenderFailure',
    'DriveStore',
    'authorize_drive',
    'EmailNotifier',
    'FormSubmission',
    'SubmissionWorkflow',
    'ApprovalWorkflow',
]
