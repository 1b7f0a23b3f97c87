"""Built-in entity manifest for vehicle claims and Stammtisch events."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from entity_model import EntityModel


logger = logging.getLogger("claimsmcp.model")

CLAIM_STATUSES = ["Eingegangen", "In Prüfung", "Freigegeben", "Abgelehnt"]

_MANAGED = [
    {"id": "createdAt", "type": "datetime"},
    {"id": "createdBy", "type": "string"},
    {"id": "modifiedAt", "type": "datetime"},
    {"id": "modifiedBy", "type": "string"},
]

CLAIMS_MANIFEST: dict = {
    "module": {"id": "kfz.claims", "name": "Vehicle Claims"},
    "entities": [
        {
            "id": "kfz.claims.Claims",
            "draft_enabled": True,
            "fields": [
                {"id": "ID", "type": "uuid", "key": True},
                {"id": "claim_number", "type": "string"},
                {"id": "status", "type": "enum", "values": CLAIM_STATUSES, "default": "Eingegangen"},
                {"id": "policy_number", "type": "string"},
                {"id": "license_plate", "type": "string"},
                {"id": "incident_date", "type": "date"},
                {"id": "description", "type": "text"},
                {"id": "estimated_cost", "type": "decimal"},
                {"id": "severity_score", "type": "integer"},
                {"id": "fraud_score", "type": "integer"},
                {"id": "documents", "type": "composition", "entity": "kfz.claims.ClaimDocuments"},
                *_MANAGED,
            ],
        },
        {
            "id": "kfz.claims.ClaimDocuments",
            "fields": [
                {"id": "ID", "type": "uuid", "key": True},
                {"id": "claim_ID", "type": "uuid"},
                {"id": "fileName", "type": "string"},
                {"id": "mediaType", "type": "string"},
                {"id": "document_type", "type": "string"},
                {"id": "note", "type": "text"},
            ],
        },
    ],
}

STAMMTISCH_MANIFEST: dict = {
    "module": {"id": "sap.stammtisch", "name": "Stammtisch"},
    "entities": [
        {
            "id": "sap.stammtisch.Stammtische",
            "draft_enabled": True,
            "fields": [
                {"id": "ID", "type": "uuid", "key": True},
                {"id": "thema", "type": "string"},
                {"id": "datum", "type": "date"},
                {"id": "ort", "type": "string"},
                {"id": "notizen", "type": "text"},
                {"id": "praesentator", "type": "association", "entity": "sap.stammtisch.Praesentatoren"},
                {"id": "teilnehmer", "type": "composition", "entity": "sap.stammtisch.Teilnehmer"},
                *_MANAGED,
            ],
        },
        {
            "id": "sap.stammtisch.Teilnehmer",
            "fields": [
                {"id": "ID", "type": "uuid", "key": True},
                {"id": "name", "type": "string"},
                {"id": "email", "type": "string"},
            ],
        },
        {
            "id": "sap.stammtisch.Praesentatoren",
            "fields": [
                {"id": "ID", "type": "uuid", "key": True},
                {"id": "name", "type": "string"},
                {"id": "email", "type": "string"},
                {"id": "linkedin", "type": "string"},
            ],
        },
    ],
}

DEFAULT_MANIFESTS = [CLAIMS_MANIFEST, STAMMTISCH_MANIFEST]


def load_manifests(path: str | None = None) -> list[dict]:
    """Manifests from ``CLAIMS_MODEL_PATH`` (object or list), else the built-in ones."""
    path = path or os.getenv("CLAIMS_MODEL_PATH", "").strip() or None
    if not path:
        return DEFAULT_MANIFESTS
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    manifests = raw if isinstance(raw, list) else [raw]
    logger.info("model_loaded path=%s manifests=%s", path, len(manifests))
    return [m for m in manifests if isinstance(m, dict)]


def build_model(path: str | None = None) -> EntityModel:
    return EntityModel(load_manifests(path))
