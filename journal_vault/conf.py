"""Journal Vault fixed names and defaults."""

# Session-scoped storage keys for the ephemeral key tier.
SESSION_KEY = '_ek'
SESSION_UID = '_ek_uid'

# Durable key record ids are "key_" + uid.
KEY_RECORD_PREFIX = 'key_'

# one year
DEFAULT_KEY_TTL_HOURS = 8760
DEFAULT_SESSION_TTL = 3600

KEY_LENGTH = 32  # AES-256
NONCE_SIZE = 12  # 96-bit IV

# Upper bound of a single atomic batch write in the document store.
MAX_BATCH_SIZE = 500

PROFILE_COLLECTION = 'users'
ENCRYPTED_FLAG = 'encrypted'

DEFAULT_COLLECTIONS = {
    'journal': {
        'fields': ('title', 'content', 'tags'),
        'batch_size': 50,
    },
    'bugs': {
        'fields': ('description', 'program'),
        'batch_size': 100,
    },
}
