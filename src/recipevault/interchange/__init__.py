"""
Bundle interchange engine.

Turns an account's data into portable bundles and back:

    BackupGenerator   account data -> bundle archive
    BundleParser      bundle archive -> decoded document
    BundleValidator   decoded document -> validated, sanitized bundle
    DuplicateDetector validated bundle -> merge-mode skip sets
    ImportProcessor   validated bundle -> stored entities (in a session)
    BackupRestorer    all of the above inside one transaction

Usage:
    from recipevault.interchange import BackupGenerator, BackupRestorer, BundleParser

    backup = BackupGenerator(store).generate(account_id)
    bundle = BundleParser().parse(backup.path)
    stats = BackupRestorer(store).restore(other_account_id, bundle, "merge")
"""

from recipevault.interchange.bundle import BUNDLE_VERSION, MIN_SUPPORTED_MAJOR
from recipevault.interchange.duplicates import (
    DuplicateDetector,
    DuplicateSkipSets,
    DuplicateStrategy,
    NameAndDateOverlapStrategy,
    NameMatchStrategy,
    RecipeSignatureStrategy,
)
from recipevault.interchange.errors import (
    ContentValidationError,
    FileFormatError,
    InterchangeError,
    ProviderError,
    SchedulingError,
    SchemaError,
    SecurityError,
    TransactionError,
)
from recipevault.interchange.generator import BackupGenerator, GeneratedBackup
from recipevault.interchange.parser import BundleParser
from recipevault.interchange.processor import ImportProcessor, ImportSummary
from recipevault.interchange.restorer import BackupRestorer, RestoreStatistics
from recipevault.interchange.validator import BundleValidator

__all__ = [
    "BUNDLE_VERSION",
    "MIN_SUPPORTED_MAJOR",
    # Components
    "BackupGenerator",
    "BundleParser",
    "BundleValidator",
    "DuplicateDetector",
    "ImportProcessor",
    "BackupRestorer",
    # Strategies
    "DuplicateStrategy",
    "RecipeSignatureStrategy",
    "NameMatchStrategy",
    "NameAndDateOverlapStrategy",
    # Results
    "GeneratedBackup",
    "DuplicateSkipSets",
    "ImportSummary",
    "RestoreStatistics",
    # Exceptions
    "InterchangeError",
    "FileFormatError",
    "SchemaError",
    "ContentValidationError",
    "SecurityError",
    "TransactionError",
    "ProviderError",
    "SchedulingError",
]
