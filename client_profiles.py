"""
Client identity profiles and the rotator that tries them in order.

Upstream decides which response shape (or whether any response at all) to
return based on the client identity headers that accompany a call, and the
page's own identity is not always the one it honours. Every upstream
operation is therefore attempted once per profile, native profile first.
"""

from dataclasses import dataclass, asdict
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from log_events import error_evt, evt


_DESKTOP_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)
_MOBILE_UA = (
    "Mozilla/5.0 (Linux; Android 11; SM-G991B) "
    "AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0.0.0 Mobile Safari/537.36"
)


@dataclass(frozen=True)
class ClientIdentityProfile:
    """Client identity presented to upstream (context.client + X-YouTube-Client-* headers)."""
    name: str
    client_header_id: str
    client_version_string: str
    user_agent: str = _DESKTOP_UA

    def headers(self) -> dict:
        return {
            "X-YouTube-Client-Name": self.client_header_id,
            "X-YouTube-Client-Version": self.client_version_string,
            "User-Agent": self.user_agent,
        }

    def context(self, hl: str = "en", visitor_data: Optional[str] = None) -> dict:
        client = {
            "clientName": self.name,
            "clientVersion": self.client_version_string,
            "hl": hl,
        }
        if visitor_data:
            client["visitorData"] = visitor_data
        return {"client": client}


# Numeric header ids per client name, as the page sends them
CLIENT_HEADER_IDS = {
    "WEB": "1",
    "MWEB": "2",
    "ANDROID": "3",
    "IOS": "5",
    "TVHTML5": "7",
    "WEB_EMBEDDED_PLAYER": "56",
}

# Alternates tried after the native profile, in priority order
ALTERNATE_PROFILES: Tuple[ClientIdentityProfile, ...] = (
    ClientIdentityProfile(
        name="WEB",
        client_header_id="1",
        client_version_string="2.20240726.00.00",
    ),
    ClientIdentityProfile(
        name="MWEB",
        client_header_id="2",
        client_version_string="2.20240726.01.00",
        user_agent=_MOBILE_UA,
    ),
    ClientIdentityProfile(
        name="ANDROID",
        client_header_id="3",
        client_version_string="19.29.37",
        user_agent="com.google.android.youtube/19.29.37 (Linux; U; Android 11) gzip",
    ),
    ClientIdentityProfile(
        name="IOS",
        client_header_id="5",
        client_version_string="19.29.1",
        user_agent="com.google.ios.youtube/19.29.1 (iPhone16,2; U; CPU iOS 17_5_1 like Mac OS X;)",
    ),
)


def native_profile(client_name: Optional[str], client_version: Optional[str]) -> Optional[ClientIdentityProfile]:
    """Build the profile the page itself uses, or None if the page didn't say."""
    if not client_name or not client_version:
        return None
    name = client_name.upper()
    return ClientIdentityProfile(
        name=name,
        client_header_id=CLIENT_HEADER_IDS.get(name, "1"),
        client_version_string=client_version,
        user_agent=_MOBILE_UA if name == "MWEB" else _DESKTOP_UA,
    )


def profiles_for(native: Optional[ClientIdentityProfile],
                 alternates: Sequence[ClientIdentityProfile] = ALTERNATE_PROFILES) -> List[ClientIdentityProfile]:
    """Native profile first, then alternates whose client name differs from it."""
    profiles = [native] if native else []
    seen = {p.name for p in profiles}
    for profile in alternates:
        if profile.name not in seen:
            profiles.append(profile)
            seen.add(profile.name)
    return profiles


class ClientIdentityRotator:
    """
    Try an operation once per profile, in order, until one returns a non-empty value.

    Profiles are attempted strictly one after another: parallel calls against the
    same upstream session only trip rate limits.
    """

    def __init__(self, profiles: Sequence[ClientIdentityProfile]):
        self.profiles = tuple(profiles)

    async def first_success(
        self,
        operation: Callable[[ClientIdentityProfile], Awaitable[Any]],
        label: str,
    ) -> Optional[Tuple[Any, ClientIdentityProfile]]:
        """
        Run operation(profile) for each profile until one returns a non-empty value.

        Args:
            operation: Coroutine function taking a ClientIdentityProfile
            label: Operation name for logging

        Returns:
            (value, profile) for the first non-empty value, or None if every profile failed
        """
        for attempt, profile in enumerate(self.profiles, start=1):
            try:
                value = await operation(profile)
            except Exception as e:
                # Per-profile failures only advance the rotation
                error_evt("client_profile_failed", e,
                          operation=label,
                          profile=profile.name,
                          attempt=attempt)
                continue

            if value:
                evt("client_profile_succeeded",
                    operation=label,
                    profile=profile.name,
                    attempt=attempt)
                return value, profile

            evt("client_profile_empty",
                operation=label,
                profile=profile.name,
                attempt=attempt)

        evt("client_profiles_exhausted", operation=label, profiles_tried=len(self.profiles))
        return None

    def describe(self) -> List[dict]:
        return [asdict(p) for p in self.profiles]
