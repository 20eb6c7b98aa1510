# Supabase table: deployments
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:
- id: bigint (primary key, identity)
- page_id: bigint (foreign key to pages.id, on delete cascade)
- created_at: timestamp (default: now())
- completed_at: timestamp (nullable) - set together with exit_code
- exit_code: integer (nullable) - null while the worker runs, 0 success, anything else failure

There is no status column: a row with a null exit_code is running (or queued
behind another deployment of the same page). The build log lives on disk at
<pages_dir>/deployments/<id>.log.
"""
