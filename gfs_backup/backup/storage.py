"""
S3 object store client for remote backups.

Wraps the handful of S3 calls the remote retention engine needs and
translates boto errors into RemoteError, or RemoteTransientError when the
store asks the caller to slow down.
"""

import os
import logging
from collections import namedtuple
from typing import List, Optional
import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)


# Error codes S3 and S3-compatible stores use to signal rate limiting
RATE_LIMIT_CODES = frozenset([
    'SlowDown',
    'Throttling',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'RequestThrottled',
])

# S3 refuses DeleteObjects requests with more keys than this
MAX_DELETE_KEYS = 1000


ListPage = namedtuple('ListPage', ['items', 'next_cursor'])


class RemoteError(Exception):
    """Raised when a remote storage operation fails."""
    pass


class RemoteTransientError(RemoteError):
    """Raised when the remote store rate-limited a request."""
    pass


def _error_code(e: ClientError) -> str:
    return e.response.get('Error', {}).get('Code', 'Unknown')


def _translate(e: Exception, action: str) -> RemoteError:
    if isinstance(e, ClientError):
        error_code = _error_code(e)
        status = e.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if error_code in RATE_LIMIT_CODES or status == 429:
            return RemoteTransientError(f"S3 {action} rate limited ({error_code}): {e}")
        return RemoteError(f"S3 {action} failed ({error_code}): {e}")
    return RemoteError(f"S3 {action} failed: {e}")


class S3Storage:
    """
    Handler for backup objects in an S3 bucket.

    Any S3-compatible store works when an endpoint URL is given.
    """

    # Use multipart upload for files larger than 100MB
    MULTIPART_THRESHOLD = 100 * 1024 * 1024
    # 10MB chunks
    MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

    def __init__(self, access_key: str, secret_key: str, bucket_name: str,
                 region: str = 'us-east-1', endpoint_url: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            access_key: Access key ID
            secret_key: Secret access key
            bucket_name: Bucket name
            region: Region (default: us-east-1)
            endpoint_url: Endpoint of an S3-compatible service (default: AWS)
        """
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                # Retries are handled by with_retry, with our own backoff
                config=BotoConfig(retries={'max_attempts': 1, 'mode': 'standard'})
            )
        except Exception as e:
            raise RemoteError(f"Failed to initialize S3 client: {e}") from e

    def ensure_bucket(self) -> bool:
        """
        Create the bucket, private, if it does not exist yet.

        Returns:
            True if the bucket was created, False if it already existed

        Raises:
            RemoteError: If the bucket cannot be checked or created
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return False
        except ClientError as e:
            if _error_code(e) not in ('404', 'NoSuchBucket', 'NotFound'):
                raise _translate(e, 'head bucket') from e
        except BotoCoreError as e:
            raise _translate(e, 'head bucket') from e

        kwargs = {'Bucket': self.bucket_name, 'ACL': 'private'}
        if self.region != 'us-east-1':
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': self.region}

        try:
            self.s3_client.create_bucket(**kwargs)
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, 'create bucket') from e

        logger.info(f"Created bucket: {self.bucket_name}")
        return True

    def list_page(self, prefix: str, cursor: Optional[str] = None) -> ListPage:
        """
        List one page of keys under a prefix.

        Args:
            prefix: Key prefix to filter by
            cursor: Continuation token from the previous page

        Returns:
            ListPage of keys, with the token of the next page or None

        Raises:
            RemoteError: If listing fails
        """
        params = {'Bucket': self.bucket_name, 'Prefix': prefix}
        if cursor:
            params['ContinuationToken'] = cursor

        try:
            response = self.s3_client.list_objects_v2(**params)
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, 'list') from e

        keys = [obj['Key'] for obj in response.get('Contents', [])]
        next_cursor = response.get('NextContinuationToken') if response.get('IsTruncated') else None

        return ListPage(items=keys, next_cursor=next_cursor)

    def put_object(self, key: str, local_path: str):
        """
        Upload a local file.

        Args:
            key: Destination object key
            local_path: Path to local file

        Raises:
            RemoteError: If upload fails
        """
        try:
            file_size = os.path.getsize(local_path)

            if file_size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)

        except (ClientError, BotoCoreError) as e:
            raise _translate(e, 'upload') from e

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload large file using multipart upload.

        The upload is aborted on any failure; a later attempt starts over.

        Args:
            local_path: Path to local file
            key: Object key
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(self.MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def copy_object(self, source_key: str, dest_key: str):
        """
        Copy an object within the bucket, server side.

        Args:
            source_key: Key to copy from
            dest_key: Key to copy to

        Raises:
            RemoteError: If the copy fails
        """
        try:
            self.s3_client.copy_object(
                Bucket=self.bucket_name,
                Key=dest_key,
                CopySource={'Bucket': self.bucket_name, 'Key': source_key}
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, 'copy') from e

    def delete_objects(self, keys: List[str]):
        """
        Delete objects in one batch request.

        Args:
            keys: Keys to delete, at most MAX_DELETE_KEYS

        Raises:
            RemoteError: If the request fails or any key could not be deleted
        """
        if len(keys) > MAX_DELETE_KEYS:
            raise ValueError(f"Cannot delete more than {MAX_DELETE_KEYS} keys in one request")

        try:
            response = self.s3_client.delete_objects(
                Bucket=self.bucket_name,
                Delete={
                    'Objects': [{'Key': key} for key in keys],
                    'Quiet': True
                }
            )
        except (ClientError, BotoCoreError) as e:
            raise _translate(e, 'delete') from e

        errors = response.get('Errors', [])
        if errors:
            codes = {x.get('Code') for x in errors}
            details = ', '.join(f"{x.get('Key')} ({x.get('Code')})" for x in errors)
            if codes & RATE_LIMIT_CODES:
                raise RemoteTransientError(f"S3 delete rate limited: {details}")
            raise RemoteError(f"S3 delete failed for: {details}")
