"""
Exceptions raised by the onboarding services.

Each exception carries the HTTP status the API layer answers with.
"""

from typing import Dict, List, Optional


class OnboardingError(Exception):
    """Base exception for onboarding errors"""
    status_code = 500


class BadRequest(OnboardingError):
    """Caller input is missing or malformed"""
    status_code = 400


class DuplicateClient(OnboardingError):
    """A client with a matching name already has a folder"""
    status_code = 409

    def __init__(self, client_name: str, matches: Optional[List[Dict]] = None):
        self.client_name = client_name
        self.matches = matches or []
        super().__init__(f'A client named "{client_name}" already exists')


class GatewayFailure(OnboardingError):
    """Storage or mail provider error"""
    pass


class StoreUnavailable(GatewayFailure):
    """Document library could not be reached or resolved"""
    pass


class UploadFailed(GatewayFailure):
    """Writing a file to the document library failed"""
    pass


class NotifyFailed(GatewayFailure):
    """Sending the notification email failed"""
    pass


class RenderFailure(OnboardingError):
    """PDF generation failed"""
    pass
