import argparse

from evently.application.token_service import TokenCodec
from evently.domain.auth import Role
from evently.infrastructure.config import Settings


def issue_tokens(codec: TokenCodec, user_id: str, ttl_seconds: int) -> dict[str, str]:
    tokens = {}
    for role in Role:
        subject = f"{role.value.lower()}@evently.local"
        principal_id = user_id if role is Role.USER else f"{role.value.lower()}-1"
        tokens[role.value] = codec.issue(subject, role, principal_id, ttl_seconds=ttl_seconds)
    return tokens


def main() -> None:
    parser = argparse.ArgumentParser(description="Print one bearer token per role for local testing.")
    parser.add_argument("--user-id", default="user-1")
    parser.add_argument("--ttl", type=int, default=3600)
    args = parser.parse_args()

    settings = Settings.from_env()
    codec = TokenCodec(settings.jwt_secret, settings.jwt_ttl_seconds)

    for role, token in issue_tokens(codec, args.user_id, args.ttl).items():
        print(f"{role}: {token}")


if __name__ == "__main__":
    main()
