import re
from dataclasses import dataclass, field

from .constants import CREDENTIAL_SECRET_VAR, CREDENTIAL_USER_VAR
from .errors import ConfigurationError

_USERINFO_RE = re.compile(r"(?P<scheme>[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


def scrub_credentials(text: str) -> str:
    """Removes any `user:secret@` userinfo from URLs embedded in `text`.

    Git echoes the remote URL in many of its error messages, so every string
    derived from git output passes through here before it is logged or raised.

    Args:
        text (str): Arbitrary text, typically git stderr.

    Returns:
        str: The text with each `scheme://userinfo@` replaced by `scheme://***@`.
    """
    return _USERINFO_RE.sub(r"\g<scheme>***@", text)


@dataclass(frozen=True)
class RemoteDescriptor:
    """An authenticated reference to the single remote repository.

    The URL and the credentials are kept apart: git is given `display_url`,
    and the credentials reach it per invocation through `credential_env()`.
    Neither ends up in `.git/config` or on a command line.

    Attributes:
        repository (str): Host-relative repository path (e.g. 'github.com/org/repo.git').
        user (str): The username presented to the remote.
        secret (str): The password or token presented to the remote.
        scheme (str): The transport scheme. Defaults to 'https'.
    """

    repository: str
    user: str
    secret: str = field(repr=False)
    scheme: str = "https"

    @property
    def display_url(self) -> str:
        """The remote URL without credentials, safe to persist and to log."""
        return f"{self.scheme}://{self.repository}"

    def credential_env(self) -> dict[str, str]:
        """Variables for the git child process that answer credential requests.

        Never log the returned mapping.
        """
        return {CREDENTIAL_USER_VAR: self.user, CREDENTIAL_SECRET_VAR: self.secret}


def resolve(repository: str, user: str, secret: str) -> RemoteDescriptor:
    """Builds the remote descriptor from configuration values.

    Args:
        repository (str): Host-relative repository path. A leading scheme
                          (e.g. 'https://') is accepted and split off.
        user (str): The repository username.
        secret (str): The repository secret.

    Returns:
        RemoteDescriptor: The immutable descriptor.

    Raises:
        ConfigurationError: If any input is empty or undefined.
    """
    missing = [
        name
        for name, value in (
            ("repository", repository),
            ("user", user),
            ("secret", secret),
        )
        if not value or not str(value).strip()
    ]
    if missing:
        raise ConfigurationError(
            f"Remote configuration incomplete: {', '.join(missing)} not set"
        )

    scheme = "https"
    repository = repository.strip()
    if "://" in repository:
        scheme, repository = repository.split("://", 1)
    if "@" in repository.split("/", 1)[0]:
        raise ConfigurationError(
            "Repository path must not embed credentials; use the user/secret settings"
        )

    return RemoteDescriptor(
        repository=repository.strip("/"),
        user=user.strip(),
        secret=secret,
        scheme=scheme,
    )
