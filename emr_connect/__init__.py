"""
EMR Connect

SMART on FHIR authentication and FHIR data access across EHR providers.
"""

__version__ = "0.1.0"
