"""
Entry point for running RecipeVault as a module.

Usage:
    python -m recipevault [command] [options]
"""

from recipevault.cli import main

if __name__ == "__main__":
    main()
