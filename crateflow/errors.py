# Copyright (c) 2025 Marcus Dillavou <line72@line72.net>
# Part of the Crateflow Project
# Released under the AGPLv3 or later

from typing import List, Optional


class CrateflowError(Exception):
    pass


class LibraryValidationError(CrateflowError):
    """The library export is structurally unusable.

    issues holds every validation issue found, fatal or not. Callers must
    not assume any partial data is usable.
    """

    def __init__(self, message: str, issues: Optional[List] = None):
        super().__init__(message)
        self.issues = list(issues or [])

    def __reduce__(self):
        return (self.__class__, (str(self), self.issues))


class AnalysisFormatError(CrateflowError):
    pass


class AnalysisCancelled(CrateflowError):
    pass


class TrackNotFoundError(CrateflowError):
    pass


class MissingPathError(CrateflowError):
    pass


class ConfigError(CrateflowError):
    pass


class ParseWorkerError(CrateflowError):
    pass
