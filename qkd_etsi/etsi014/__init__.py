"""
Vault API (ETSI GS QKD 014): GET_STATUS, GET_KEY and GET_KEY_WITH_IDS
against a Key Management Entity.
"""
