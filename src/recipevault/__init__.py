"""
RecipeVault - backup and restore engine for recipe book accounts.

Keep every recipe, collection, meal plan and shopping list portable.

RecipeVault serializes an account's dataset into a versioned bundle, validates
and re-imports bundles uploaded by users or fetched from cloud storage, and
runs unattended periodic backups with retry and self-disable behaviour.

Key Features:
    - Portable ZIP bundles wrapping a single JSON document
    - Two-pass validation with markup sanitization of untrusted input
    - Merge imports with duplicate detection, or destructive replace imports
    - Identifier remapping so collections and meal plans keep their recipes
    - All-or-nothing persistence inside one transaction
    - Scheduled uploads to a local folder, Dropbox or Google Drive
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from recipevault.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
