from clubhub.settings.manager import SettingsManager, format_validation_error
from clubhub.settings.models import AppModel

__all__ = ["AppModel", "SettingsManager", "format_validation_error"]
