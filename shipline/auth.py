from datetime import datetime

from joserfc import jwt
from joserfc.errors import JoseError
from joserfc.jwk import OctKey

from shipline.config import config
from shipline.exceptions import AuthError

ALGORITHM = 'HS256'
SCOPE = 'approve'


def get_key() -> OctKey:
    if not config.approval_secret:
        raise AuthError('approval_secret is not configured')
    return OctKey.import_key(config.approval_secret)


def issue_token(actor: str, ttl: int | None = None) -> str:
    now = int(datetime.now().timestamp())
    data = {
        'sub': actor,
        'scope': SCOPE,
        'iat': now,
        'exp': now + (ttl or config.approval_token_ttl),
    }
    return jwt.encode({'alg': ALGORITHM}, data, get_key())


def verify_token(token: str) -> str:
    key = get_key()
    try:
        decoded = jwt.decode(token, key, algorithms=[ALGORITHM])
        claims_requests = jwt.JWTClaimsRegistry(
            sub={'essential': True},
            exp={'essential': True},
            scope={'essential': True, 'value': SCOPE},
        )
        claims_requests.validate(decoded.claims)
    except (JoseError, ValueError) as e:
        raise AuthError(f'Invalid approval token: {e}')
    return decoded.claims['sub']
