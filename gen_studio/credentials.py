from __future__ import annotations

from typing import Any, Iterable

from .models import ResolvedCredential, VideoSettings


KIE_PLATFORM_ALIASES = frozenset({"kie.ai", "kie", "kei", "kieai"})


class MissingCredentialError(RuntimeError):
    pass


def resolve_video_api_key(
    settings: VideoSettings,
    keys: Iterable[dict[str, Any]],
    env_key: str = "",
) -> ResolvedCredential:
    if env_key and env_key.strip():
        return ResolvedCredential(api_key=env_key.strip(), source="environment")

    if settings.api_key and settings.api_key.strip():
        return ResolvedCredential(api_key=settings.api_key.strip(), source="videoSettings")

    for entry in keys:
        platform = str(entry.get("platform") or "").strip().lower()
        secret = str(entry.get("apiKey") or "").strip()
        if platform in KIE_PLATFORM_ALIASES and secret:
            return ResolvedCredential(api_key=secret, source=str(entry.get("name") or platform))

    raise MissingCredentialError("未配置 KIE.AI 的 API 密钥")
