from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import uuid
from datetime import datetime, timedelta, timezone

from azure.core.credentials import TokenCredential
from azure.core.exceptions import HttpResponseError, ResourceExistsError
from azure.storage.blob import (
    BlobSasPermissions,
    BlobServiceClient,
    ContentSettings,
    generate_blob_sas,
)

from .config import Settings

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp", "image/svg+xml"}


class OptionImageStore:
    """Upload pictures used as answer options of image polls to Azure Blob Storage."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._blob_service_client: BlobServiceClient | None = None
        self._container_initialised = False
        self._container_is_private: bool | None = None

    @property
    def configured(self) -> bool:
        return bool(self.settings.AZURE_STORAGE_CONNECTION_STRING)

    def _get_blob_service(self) -> BlobServiceClient:
        if self._blob_service_client is None:
            if not self.settings.AZURE_STORAGE_CONNECTION_STRING:
                raise RuntimeError("Azure Blob Storage is not configured")
            self._blob_service_client = BlobServiceClient.from_connection_string(
                self.settings.AZURE_STORAGE_CONNECTION_STRING
            )
        return self._blob_service_client

    async def upload(
        self,
        option_id: str,
        filename: str,
        content: bytes,
        content_type: str | None,
    ) -> str:
        if not content:
            raise ValueError("Uploaded file was empty")

        guessed_type = content_type or mimetypes.guess_type(filename)[0]
        if guessed_type not in ALLOWED_IMAGE_TYPES:
            raise ValueError(f"Unsupported image type: {guessed_type or 'unknown'}")

        service = self._get_blob_service()
        container_name = self.settings.AZURE_STORAGE_CONTAINER
        container_client = service.get_container_client(container_name)
        await self._ensure_container(container_client)

        extension = os.path.splitext(filename)[1]
        if not extension:
            extension = mimetypes.guess_extension(guessed_type) or ""

        blob_name = f"options/{option_id}-{uuid.uuid4().hex}{extension}"
        blob_client = container_client.get_blob_client(blob_name)

        await asyncio.to_thread(
            blob_client.upload_blob,
            content,
            overwrite=True,
            content_settings=ContentSettings(content_type=guessed_type),
        )
        logger.info("uploaded option image %s (%d bytes)", blob_name, len(content))

        if self._container_is_private:
            return await self._build_private_blob_url(service, container_name, blob_name, blob_client.url)
        return blob_client.url

    async def _ensure_container(self, container_client) -> None:
        if self._container_initialised:
            return

        try:
            await asyncio.to_thread(container_client.create_container, public_access="blob")
        except ResourceExistsError:
            pass
        except HttpResponseError as exc:
            error_code = getattr(exc, "error_code", None) or getattr(
                getattr(exc, "error", None), "code", None
            )
            if error_code != "PublicAccessNotPermitted":
                raise
            try:
                await asyncio.to_thread(container_client.create_container)
            except ResourceExistsError:
                pass
            self._container_is_private = True
        else:
            self._container_is_private = False

        if self._container_is_private is None:
            properties = await asyncio.to_thread(container_client.get_container_properties)
            public_access = getattr(properties, "public_access", None)
            self._container_is_private = public_access not in {"blob", "container"}
        self._container_initialised = True

    async def _build_private_blob_url(
        self, service: BlobServiceClient, container_name: str, blob_name: str, base_url: str
    ) -> str:
        now = datetime.now(timezone.utc)
        expiry = now + timedelta(hours=2)
        permissions = BlobSasPermissions(read=True)

        credential = getattr(service, "credential", None)

        if isinstance(credential, TokenCredential):
            delegation_key = await asyncio.to_thread(service.get_user_delegation_key, now, expiry)
            sas_token = generate_blob_sas(
                account_name=service.account_name,
                container_name=container_name,
                blob_name=blob_name,
                user_delegation_key=delegation_key,
                permission=permissions,
                expiry=expiry,
            )
        elif credential is not None:
            sas_token = generate_blob_sas(
                account_name=service.account_name,
                container_name=container_name,
                blob_name=blob_name,
                credential=credential,
                permission=permissions,
                expiry=expiry,
            )
        else:
            raise RuntimeError("Azure Blob Storage credential is required for SAS generation")

        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{sas_token}"
