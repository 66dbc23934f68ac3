"""
Environment Configuration Utility

Provides environment detection and simulated-completion policy enforcement.

ENVIRONMENT values:
- production: No simulated completions; a model without credentials is not served
- development: Simulated completions allowed when a provider key is missing
- test: Simulated completions allowed for automated testing
"""
import os
import logging

# Valid environment values
VALID_ENVIRONMENTS = {"production", "development", "test"}

# Get current environment (default to development for safety)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development").lower()

# Validate environment value
if ENVIRONMENT not in VALID_ENVIRONMENTS:
    logging.warning(f"Invalid ENVIRONMENT '{ENVIRONMENT}', defaulting to 'development'")
    ENVIRONMENT = "development"


def is_production() -> bool:
    """Check if running in production environment."""
    return ENVIRONMENT == "production"


def allow_mock_data() -> bool:
    """
    Check if simulated completions are allowed.

    Returns True only in development or test environments.
    Production must never bill for fabricated responses.
    """
    return not is_production()


# Log environment on module load
logging.info(f"Environment: {ENVIRONMENT} | Simulated completions allowed: {allow_mock_data()}")
