"""
Payroll Recon - Services Package

Business logic services:
- workbook_parser / sheet_adapters: workbook ingestion
- identity_resolution_service: payroll name to employee matching
- payroll_period_service: period lifecycle, carry-forward and edits
- payroll_import_service: persisting parsed workbooks and backfill
- payroll_computation_service: recalculation and reconciliation
- receipt_dispatch_service: e-signature dispatch, webhooks and status sync
- payroll_master_data_service: tax, travel, calendar and employee master data
"""
