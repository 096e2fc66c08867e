from .api import SonosApi, filter_groups
from .auth import SonosAuth, SonosAuthError
from .oauth import TokenError
from .tokens import FileTokenStore, PanelTokenStore

__all__ = [
    "SonosApi",
    "SonosAuth",
    "SonosAuthError",
    "TokenError",
    "FileTokenStore",
    "PanelTokenStore",
    "filter_groups",
]
