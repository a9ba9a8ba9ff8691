"""
Ranking / quality presets for the scraper's settings, expressed as a dotted-key
settings patch.
"""
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel

from ..exceptions import ValidationError


class RankingPreset(BaseModel):
    """
    One selectable preset: which resolutions to fetch and the custom rank of
    each quality, HDR and audio attribute.
    """
    choice: str
    title: str
    description: str
    resolutions: Dict[str, bool]
    quality: Dict[str, int]
    hdr: Dict[str, int]
    audio: Dict[str, int]

    def to_settings(self) -> Dict[str, Any]:
        """
        Flattens the preset into ``ranking.*`` keys.

        :return: Mapping of dotted settings keys to values.
        """
        patch: Dict[str, Any] = {}
        for resolution, enabled in self.resolutions.items():
            patch[f"ranking.resolutions.{resolution}"] = enabled
        for section, ranks in (("quality", self.quality), ("hdr", self.hdr), ("audio", self.audio)):
            for attribute, rank in ranks.items():
                prefix = f"ranking.custom_ranks.{section}.{attribute}"
                patch[f"{prefix}.fetch"] = True
                patch[f"{prefix}.use_custom_rank"] = True
                patch[f"{prefix}.rank"] = rank
        return patch


def _preset(choice, title, description, r2160, quality, hdr, audio) -> RankingPreset:
    keys_q = ("remux", "bluray", "webdl", "web")
    keys_h = ("dolby_vision", "hdr10plus", "hdr", "sdr")
    keys_a = ("truehd", "dts_lossless", "atmos", "eac3", "aac")
    return RankingPreset(
        choice=choice,
        title=title,
        description=description,
        resolutions={"2160p": r2160, "1080p": True, "720p": True, "480p": False},
        quality=dict(zip(keys_q, quality)),
        hdr=dict(zip(keys_h, hdr)),
        audio=dict(zip(keys_a, audio)),
    )


PRESETS: Dict[str, RankingPreset] = {
    p.choice: p
    for p in [
        _preset(
            "1", "Max Quality",
            "4K Remux > 1080p Remux > 4K WEB-DL > 1080p WEB-DL (prefers best audio)",
            True, (10000, 3000, 2000, 1500), (2500, 1800, 1500, -500), (2500, 2200, 1800, 500, 0),
        ),
        _preset(
            "2", "Balanced",
            "4K WEB-DL/Bluray > 1080p Bluray/WEB-DL",
            True, (2500, 2500, 2400, 1800), (1200, 900, 700, 0), (1200, 1100, 900, 500, 0),
        ),
        _preset(
            "3", "1080p HQ",
            "1080p Remux/Bluray > 1080p WEB-DL (good audio)",
            False, (4000, 2500, 2000, 1500), (600, 0, 500, 0), (1200, 1000, 800, 500, 0),
        ),
        _preset(
            "4", "Saver",
            "1080p WEB-DL > 720p (no 4K, discourages remux)",
            False, (-2000, 500, 2000, 1800), (200, 0, 200, 0), (200, 200, 150, 300, 0),
        ),
    ]
}

DEFAULT_PRESET = "1"


def get_preset(choice: str) -> RankingPreset:
    """
    :raises ValidationError: For an unknown preset choice.
    """
    try:
        return PRESETS[choice]
    except KeyError:
        raise ValidationError(
            f"Unknown ranking preset '{choice}' (choose {', '.join(PRESETS)})"
        ) from None


def menu() -> List[Tuple[str, str]]:
    return [(p.choice, f"{p.title}: {p.description}") for p in PRESETS.values()]
