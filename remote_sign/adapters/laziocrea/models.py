"""
Data models for LAZIOcrea FirmaWeb integration
"""

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from ..base.qes_provider import config_from_section


ENVIRONMENT_URLS = {
    "collaudo": "https://gwapi.laziocrea.it/firmaweb",
    "produzione": "https://gwapi.servicelazio.it/firmaweb",
}

DEFAULT_OAUTH_URL = "https://qiam.regione.lazio.it/oauth2/token"


@dataclass
class LAZIOcreaConfig:
    """Configuration for the LAZIOcrea provider"""

    # Empty base_url selects the gateway of the configured environment
    base_url: str = ""
    environment: str = "collaudo"
    timeout: float = 30.0

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    oauth_url: str = DEFAULT_OAUTH_URL
    scope: str = "openid"

    @property
    def resolved_base_url(self) -> str:
        if self.base_url:
            return self.base_url.rstrip("/")
        return ENVIRONMENT_URLS.get(self.environment, ENVIRONMENT_URLS["collaudo"])

    @classmethod
    def from_section(cls, section: Mapping[str, Any]) -> "LAZIOcreaConfig":
        return config_from_section(cls, section)


@dataclass
class LAZIOcreaEnvelope:
    """
    Response envelope wrapping every FirmaWeb API answer.

    esito is OK or KO; on KO the error code and description are set.
    """

    esito: str
    data: Any = None
    codice_errore: Optional[str] = None
    descrizione_errore: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.esito != "KO"

    @classmethod
    def from_json(cls, body: Dict[str, Any]) -> "LAZIOcreaEnvelope":
        return cls(
            esito=str(body.get("esito", "OK")).upper(),
            data=body.get("data"),
            codice_errore=body.get("codiceErrore"),
            descrizione_errore=body.get("descrizioneErrore"),
        )
