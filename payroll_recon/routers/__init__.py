"""
Payroll Recon - Routers Package

FastAPI route handlers.

Routers:
- payroll: periods, imports, lifecycle actions, dispatch and receipts
- payroll_mappings: identity mappings
- payroll_settings: master data
- esignature_webhook: provider callbacks
"""
