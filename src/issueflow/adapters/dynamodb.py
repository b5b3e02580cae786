"""
DynamoDB adapter for issueflow.

Requires the `dynamodb` extra: pip install issueflow[dynamodb]

Usage:
    from issueflow.adapters.dynamodb import DynamoDBRepository
    from issueflow import LifecycleService

    repo = DynamoDBRepository(issues_table="issues", releases_table="releases")
    service = LifecycleService(repository=repo)
"""

import logging
import os
from typing import Any, Optional

from issueflow.states import Issue, Release

logger = logging.getLogger(__name__)

try:
    import boto3
    from botocore.exceptions import ClientError
except ImportError:
    raise ImportError("boto3 is required for the DynamoDB adapter. Install it with: pip install issueflow[dynamodb]")


class DynamoDBRepository:
    """
    DynamoDB-backed repository for Issues and Releases.

    Issues table:
        Partition key: issue_id (S)
        GSI state-index: partition key state (S), sort key updated_at (S)

    Releases table:
        Partition key: key (S)
    """

    STATE_INDEX = "state-index"

    def __init__(
        self,
        issues_table: Optional[str] = None,
        releases_table: Optional[str] = None,
        region_name: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self._issues_table_name = issues_table or os.environ.get("ISSUEFLOW_ISSUES_TABLE", "issueflow-issues")
        self._releases_table_name = releases_table or os.environ.get("ISSUEFLOW_RELEASES_TABLE", "issueflow-releases")
        self._region_name = region_name
        self._client = client
        self._issues = None
        self._releases = None

    def _resource(self) -> Any:
        if self._client is None:
            kwargs = {}
            if self._region_name:
                kwargs["region_name"] = self._region_name
            self._client = boto3.resource("dynamodb", **kwargs)
        return self._client

    @property
    def issues(self) -> Any:
        if self._issues is None:
            self._issues = self._resource().Table(self._issues_table_name)
        return self._issues

    @property
    def releases(self) -> Any:
        if self._releases is None:
            self._releases = self._resource().Table(self._releases_table_name)
        return self._releases

    def save_issue(self, issue: Issue) -> Issue:
        try:
            self.issues.put_item(Item=issue.to_dict())
            return issue
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB save failed for {issue.issue_id}: {e}")
            raise

    def get_issue(self, issue_id: str) -> Optional[Issue]:
        try:
            response = self.issues.get_item(Key={"issue_id": issue_id})
            item = response.get("Item")
            if item is None:
                return None
            return Issue.from_dict(item)
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB get failed for {issue_id}: {e}")
            raise

    def list_issues(self) -> list[Issue]:
        try:
            items = self._scan_all(self.issues)
            return [Issue.from_dict(item) for item in items]
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB list_issues failed: {e}")
            raise

    def list_issues_by_state(self, state: str, limit: Optional[int] = None) -> list[Issue]:
        try:
            items: list[dict[str, Any]] = []
            kwargs: dict[str, Any] = {
                "IndexName": self.STATE_INDEX,
                "KeyConditionExpression": "#s = :state",
                "ExpressionAttributeNames": {"#s": "state"},
                "ExpressionAttributeValues": {":state": state},
                "ScanIndexForward": False,
            }
            while limit is None or len(items) < limit:
                if limit is not None:
                    kwargs["Limit"] = limit - len(items)
                response = self.issues.query(**kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
            return [Issue.from_dict(item) for item in items]
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB list_issues_by_state failed: {e}")
            raise

    def save_release(self, release: Release) -> Release:
        try:
            self.releases.put_item(Item=release.to_dict())
            return release
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB save failed for release {release.key}: {e}")
            raise

    def get_release(self, key: str) -> Optional[Release]:
        try:
            response = self.releases.get_item(Key={"key": key})
            item = response.get("Item")
            if item is None:
                return None
            return Release.from_dict(item)
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB get failed for release {key}: {e}")
            raise

    def list_releases(self) -> list[Release]:
        try:
            return [Release.from_dict(item) for item in self._scan_all(self.releases)]
        except ClientError as e:
            logger.error(f"[issueflow] DynamoDB list_releases failed: {e}")
            raise

    @staticmethod
    def _scan_all(table: Any) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        kwargs: dict[str, Any] = {}
        while True:
            response = table.scan(**kwargs)
            items.extend(response.get("Items", []))
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                return items
            kwargs["ExclusiveStartKey"] = last_key
