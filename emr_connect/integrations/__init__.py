"""
Integrations - External System Connectors

Provides SMART on FHIR connectivity to EHR providers:
- Provider registry and presets
- SMART authorization client with PKCE
- Quirk-aware FHIR R4 client
- Patient data aggregation
"""
