from __future__ import annotations

import urllib.parse


def append_query_params(url: str, params: dict[str, str | None]) -> str:
    parsed = urllib.parse.urlparse(url)
    existing = urllib.parse.parse_qs(parsed.query, keep_blank_values=True)
    for key, value in params.items():
        if value is None:
            continue
        existing[key] = [value]

    new_query = urllib.parse.urlencode(existing, doseq=True)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))


def public_endpoint(public_url: str, path: str) -> str:
    return f"{public_url.rstrip('/')}/{path.lstrip('/')}"
