# src/vaultgate/gate/__init__.py
"""
Vaultgate access core.

  - vault_config / registry: per-vault gating config, hashed and audited
  - proof: signed join challenges (EIP-191, EIP-1271 fallback)
  - eligibility: share-balance reads with a confirming second read
  - action_queue: idempotent side-effect intents for the external runtime
  - join_requests: watching / queued / added tracking per wallet
  - join_flow: the join decision pipeline
  - roles / commands: group-chat command surface
"""
