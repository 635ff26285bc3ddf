from django.conf import settings
from django.test import SimpleTestCase


class UploadLimitSettingsTests(SimpleTestCase):
    def test_global_limits_cover_configured_max(self) -> None:
        base_limit_mb = max(settings.MAX_IMAGE_UPLOAD_MB, settings.MAX_AVATAR_UPLOAD_MB)
        expected_bytes = base_limit_mb * 1024 * 1024
        self.assertGreaterEqual(settings.FILE_UPLOAD_MAX_MEMORY_SIZE, expected_bytes)
        self.assertGreaterEqual(settings.DATA_UPLOAD_MAX_MEMORY_SIZE, expected_bytes)

    def test_coin_economy_defaults(self) -> None:
        self.assertGreater(settings.AUTHOR_REVENUE_SHARE, 0)
        self.assertLessEqual(settings.AUTHOR_REVENUE_SHARE, 1)
        self.assertGreaterEqual(settings.CHAPTER_UNLOCK_MAX_ATTEMPTS, 1)
