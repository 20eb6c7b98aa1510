# Supabase tables: accounts, pages, env_vars
# This file documents the expected database schema
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:

accounts
- login: text (primary key)
- access_token: text (not null) - source-control OAuth token, used for private clones
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)

pages
- id: bigint (primary key, identity)
- account_login: text (foreign key to accounts.login, on delete cascade)
- repo: text (not null) - "owner/name"
- name: text (not null, unique) - also used to derive the systemd unit name; fixed after creation
- branch: text (not null)
- build_script: text (nullable) - multi-line shell recipe
- build_output_dir: text (nullable) - subdirectory holding the entry script
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
(repo, branch) is the webhook matching key and is not unique.

env_vars
- id: bigint (primary key, identity)
- page_id: bigint (foreign key to pages.id, on delete cascade)
- name: text (not null)
- value: text (not null) - opaque, may be sensitive
- created_at: timestamp (default: now())
- updated_at: timestamp (nullable)
"""
