"""Read-only activity feed merging version changes and verification attempts."""

from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import select

from pluginfed.models import MirroredPlugin, Source, SourceVerification, VersionUpdate
from pluginfed.utils.exceptions import ValidationError

ACTIVITY_VERSION_UPDATE = 'version_update'
ACTIVITY_VERIFICATION = 'source_verification'


class ActivityFeed:
    """Reverse-chronological view over ``version_updates`` and ``source_verifications``."""

    def __init__(self, database_manager: Any, logger_manager: Any) -> None:
        self._db = database_manager
        self._logger = logger_manager.get_logger('activity_feed')

    async def get_activity(self, limit: int = 20, offset: int = 0) -> List[Dict[str, Any]]:
        """Get one page of the merged activity stream.

        Each stream is read up to ``limit + offset`` rows, the two are merged
        newest first and the page is cut from the merged list.

        Args:
            limit: Maximum number of entries
            offset: Entries of the merged stream to skip

        Returns:
            Activity entries, newest first

        Raises:
            ValidationError: If limit or offset is negative
        """
        if limit < 0 or offset < 0:
            raise ValidationError('limit and offset must not be negative', limit=limit, offset=offset)
        if limit == 0:
            return []

        window = limit + offset
        plugin_name = (
            select(MirroredPlugin.name)
            .where(
                MirroredPlugin.plugin_id == VersionUpdate.plugin_id,
                MirroredPlugin.source_id == VersionUpdate.source_id,
            )
            .order_by(MirroredPlugin.id.desc())
            .limit(1)
            .correlate(VersionUpdate)
            .scalar_subquery()
        )

        async with self._db.session() as session:
            updates = session.execute(
                select(VersionUpdate, plugin_name, Source.username)
                .outerjoin(Source, Source.id == VersionUpdate.source_id)
                .order_by(VersionUpdate.update_time.desc(), VersionUpdate.id.desc())
                .limit(window)
            ).all()
            verifications = session.execute(
                select(SourceVerification, Source.username)
                .outerjoin(Source, Source.id == SourceVerification.source_id)
                .order_by(SourceVerification.verified_at.desc(), SourceVerification.id.desc())
                .limit(window)
            ).all()

        activities = []
        for update, name, username in updates:
            activities.append({
                'type': ACTIVITY_VERSION_UPDATE,
                'plugin_id': update.plugin_id,
                'source_id': update.source_id,
                'old_version': update.old_version,
                'new_version': update.new_version,
                'timestamp': update.update_time,
                'plugin_name': name,
                'source_username': username,
                'notified': update.notified,
            })
        for verification, username in verifications:
            activities.append({
                'type': ACTIVITY_VERIFICATION,
                'plugin_id': None,
                'source_id': verification.source_id,
                'old_version': None,
                'new_version': None,
                'timestamp': verification.verified_at,
                'plugin_name': None,
                'source_username': username,
                'verification_type': verification.verification_type,
                'result': verification.result,
            })

        activities.sort(key=lambda activity: activity['timestamp'], reverse=True)
        page = activities[offset:offset + limit]
        for activity in page:
            activity['timestamp'] = activity['timestamp'].isoformat()
        return page
