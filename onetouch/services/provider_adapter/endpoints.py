"""OneTouch endpoint table.

Binds each logical operation to its path, HTTP method and signature scheme.
The scheme is configuration: the provider's token API expects `CHECKSUM`
(HMAC-SHA256) while the no-registration pages expect `APPCHECK` (HMAC-SHA1).
"""

from dataclasses import dataclass

from onetouch.common.signing import SignatureScheme


@dataclass(frozen=True)
class Endpoint:
    name: str
    path: str
    method: str = "GET"
    scheme: SignatureScheme = SignatureScheme.CHECKSUM
    read_only: bool = True


CODE_GET = Endpoint("code_get", "api/code/get")
TOKEN_GET = Endpoint("token_get", "api/token/get")
TOKEN_INVALIDATE = Endpoint("token_invalidate", "api/token/invalidate", read_only=False)
AUTH_START = Endpoint("auth_start", "api/start")
PAYMENT_INIT = Endpoint("payment_init", "payment/init", "POST", read_only=False)
PAYMENT_CHECK = Endpoint("payment_check", "payment/check", "POST")
PAYMENT_SEND = Endpoint("payment_send", "payment/send/user", "POST", read_only=False)
PAYMENT_STATUS = Endpoint("payment_status", "payment/send/status", "POST")
USER_PINS = Endpoint("user_pins", "user/info/pins")
USER_PINS_BALANCE = Endpoint("user_pins_balance", "user/info/pins/balance")
NOREG_SEND = Endpoint("noreg_send", "api/payment/noreg/send", scheme=SignatureScheme.APPCHECK, read_only=False)
NOREG_STATUS = Endpoint("noreg_status", "api/payment/noreg/send/status", scheme=SignatureScheme.APPCHECK)
REFUND = Endpoint("refund", "api/payment/refund", "POST", read_only=False)

ENDPOINTS: dict[str, Endpoint] = {
    endpoint.name: endpoint
    for endpoint in (
        CODE_GET,
        TOKEN_GET,
        TOKEN_INVALIDATE,
        AUTH_START,
        PAYMENT_INIT,
        PAYMENT_CHECK,
        PAYMENT_SEND,
        PAYMENT_STATUS,
        USER_PINS,
        USER_PINS_BALANCE,
        NOREG_SEND,
        NOREG_STATUS,
        REFUND,
    )
}
