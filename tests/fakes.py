from focuscal.errors import AuthError
from focuscal.token_provider import TokenProvider


class StaticTokenProvider(TokenProvider):
    def __init__(self, tokens: dict[str, str], application_token: str = "") -> None:
        self.tokens = dict(tokens)
        self.application_token = application_token

    def get_access_token(self, user_id: str) -> str:
        token = self.tokens.get(user_id)
        if not token:
            raise AuthError(f"No provider token registered for user {user_id}")
        return token

    def get_application_token(self) -> str:
        if not self.application_token:
            raise AuthError("No application token configured")
        return self.application_token
