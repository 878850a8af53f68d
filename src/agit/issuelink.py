"""Pre-filled bug report links for unexpected failures."""

import os
import platform
from urllib.parse import urlencode

REPO_URL = "https://github.com/fathindos/agit"
MAX_URL_LEN = 2000
MAX_TITLE_LEN = 120
ENV_OPT_OUT = "AGIT_NO_ISSUE_LINK"
TRUNCATION_NOTE = "\n\n[body truncated, see terminal output for full error]"


def enabled() -> bool:
    return not os.environ.get(ENV_OPT_OUT)


def build(error: BaseException, command: list[str], version: str) -> str:
    """Build a GitHub new-issue URL carrying the error, version and command."""
    message = str(error) or type(error).__name__
    title = "Bug: " + message.splitlines()[0]
    if len(title) > MAX_TITLE_LEN:
        title = title[: MAX_TITLE_LEN - 3] + "..."
    body = (
        f"## Error\n```\n{message}\n```\n\n"
        f"## Environment\n"
        f"- **agit version**: {version}\n"
        f"- **OS**: {platform.system()}\n"
        f"- **Arch**: {platform.machine()}\n"
        f"- **Command**: `{' '.join(command)}`\n"
    )
    url = _url(title, body)
    if len(url) <= MAX_URL_LEN:
        return url

    size = len(body)
    while size > 0:
        size = size * 3 // 4
        url = _url(title, body[:size] + TRUNCATION_NOTE)
        if len(url) <= MAX_URL_LEN:
            return url
    return _url(title, TRUNCATION_NOTE)


def _url(title: str, body: str) -> str:
    params = {"title": title, "labels": "bug", "template": "bug_report.md", "body": body}
    return f"{REPO_URL}/issues/new?{urlencode(params)}"
