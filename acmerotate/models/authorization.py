from dataclasses import dataclass

import acme.messages


@dataclass(frozen=True)
class AuthorizationResource:
    """An authorization as fetched from the CA together with the URL it was fetched from."""

    url: str
    body: acme.messages.Authorization

    @property
    def status(self) -> acme.messages.Status:
        return self.body.status

    @property
    def identifier(self) -> acme.messages.Identifier:
        return self.body.identifier
