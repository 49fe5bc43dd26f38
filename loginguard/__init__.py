"""LoginGuard: rule-driven detection of phishing copies of brand login pages."""

__version__ = "0.1.0"
