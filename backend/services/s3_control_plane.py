# services/s3_control_plane.py
import logging
from typing import Dict, List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from models.upload_models import PresignedUrlSet
from services.control_plane import ControlPlane, ControlPlaneError

logger = logging.getLogger(__name__)


class S3ControlPlane(ControlPlane):
    """Control plane that talks to an S3 bucket directly.

    Presign opens a multipart upload and signs one ``upload_part`` URL per
    chunk; finalize lists the uploaded parts and completes the upload.
    """

    def __init__(
        self,
        bucket_name: str,
        s3_client=None,
        region_name: str = "us-east-1",
        aws_access_key: str = None,
        aws_secret_key: str = None,
        presigned_url_expiry: int = 3600,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.s3_client = s3_client or boto3.client(
            "s3",
            region_name=region_name,
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            config=boto3.session.Config(signature_version='s3v4')
        )
        self.bucket_name = bucket_name
        self.presigned_url_expiry = presigned_url_expiry
        # upload_id -> (s3 key, S3 UploadId) of the current attempt
        self._uploads: Dict[str, tuple] = {}

    def _s3_key(self, upload_id: str, filename: str) -> str:
        return f"uploads/{upload_id}/{filename}"

    async def _presign_once(self, upload_id, filename, chunk_count, mime_type):
        key = self._s3_key(upload_id, filename)
        try:
            response = self.s3_client.create_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                ContentType=mime_type,
                Metadata={
                    'upload-id': upload_id,
                    'original-filename': filename,
                    'total-parts': str(chunk_count)
                }
            )
            s3_upload_id = response["UploadId"]
            urls = [
                self.s3_client.generate_presigned_url(
                    "upload_part",
                    Params={
                        "Bucket": self.bucket_name,
                        "Key": key,
                        "UploadId": s3_upload_id,
                        "PartNumber": part_number
                    },
                    ExpiresIn=self.presigned_url_expiry,
                    HttpMethod="PUT"
                )
                for part_number in range(1, chunk_count + 1)
            ]
        except (BotoCoreError, ClientError) as e:
            raise ControlPlaneError(f"S3 presign failed: {e}") from e

        previous = self._uploads.get(upload_id)
        self._uploads[upload_id] = (key, s3_upload_id)
        if previous:
            self._abort_quietly(*previous)
        return PresignedUrlSet(presign_urls=urls)

    async def _finalize_once(self, upload_id, filename, total_chunks):
        if upload_id not in self._uploads:
            raise ControlPlaneError(f"No open multipart upload for {upload_id}")
        key, s3_upload_id = self._uploads[upload_id]

        try:
            parts = self._list_parts(key, s3_upload_id)
            if len(parts) != total_chunks:
                raise ControlPlaneError(
                    f"S3 holds {len(parts)} parts for {upload_id}, expected {total_chunks}"
                )
            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=s3_upload_id,
                MultipartUpload={"Parts": parts}
            )
        except (BotoCoreError, ClientError) as e:
            raise ControlPlaneError(f"S3 finalize failed: {e}") from e

        del self._uploads[upload_id]

    def _list_parts(self, key: str, s3_upload_id: str) -> List[dict]:
        parts = []
        params = {"Bucket": self.bucket_name, "Key": key, "UploadId": s3_upload_id}
        while True:
            response = self.s3_client.list_parts(**params)
            parts.extend(
                {"PartNumber": p["PartNumber"], "ETag": p["ETag"]}
                for p in response.get("Parts", [])
            )
            if not response.get("IsTruncated"):
                break
            params["PartNumberMarker"] = response["NextPartNumberMarker"]
        return sorted(parts, key=lambda x: x['PartNumber'])

    def _abort_quietly(self, key: str, s3_upload_id: str):
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=s3_upload_id
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("Could not abort stale multipart upload %s: %s", s3_upload_id, e)
