"""
Domain constants used across services/routers.
"""

# Control number alphabet: no 0/O or 1/I so codes survive being read aloud
CODE_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"
CODE_TIME_DIGITS = 6

# Identifier prefixes
BATCH_ID_PREFIX = "BATCH_"
ORDER_ID_PREFIX = "ORD_"
SERVICE_ID_PREFIX = "SVC_"

# Every supported currency is booked with two minor-unit digits
MINOR_UNIT_DIGITS = 2

# Largest amount, in minor units, a signed 64-bit column holds
MAX_AMOUNT_MINOR = 2 ** 63 - 1

# Optimistic re-reads before apply_status gives up on a hot payment
MAX_STATUS_CAS_ATTEMPTS = 5

# Header carrying the HMAC-SHA256 of a webhook body
WEBHOOK_SIGNATURE_HEADER = "x-webhook-signature"

# Permission names carried on a Principal
PERM_CONTROL_NUMBERS_WRITE = "control_numbers:write"
PERM_CONTROL_NUMBERS_REDEEM = "control_numbers:redeem"
PERM_PAYMENTS_WRITE = "payments:write"
PERM_PAYMENTS_READ = "payments:read"
PERM_SERVICES_WRITE = "services:write"
PERM_SERVICES_READ = "services:read"

MERCHANT_PERMISSIONS = frozenset({
    PERM_CONTROL_NUMBERS_WRITE,
    PERM_CONTROL_NUMBERS_REDEEM,
    PERM_PAYMENTS_WRITE,
    PERM_PAYMENTS_READ,
    PERM_SERVICES_WRITE,
    PERM_SERVICES_READ,
})
