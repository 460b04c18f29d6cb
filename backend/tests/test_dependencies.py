import unittest
from unittest.mock import patch

from backend import dependencies
from backend.gateway import InMemoryGateway
from backend.local_settings import InMemorySettingsStore


def _in_memory_settings():
    return type(
        "Settings",
        (),
        {
            "use_in_memory_backends": True,
            "jpeg_quality": 70,
            "retry_max_attempts": 2,
            "retry_initial_delay": 0.0,
            "retry_max_delay": 1.0,
        },
    )()


class DependenciesTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        dependencies.reset()
        self.addCleanup(dependencies.reset)

    @patch("backend.dependencies.get_settings")
    async def test_in_memory_wiring(self, mock_settings):
        mock_settings.return_value = _in_memory_settings()

        service = dependencies.get_sync_service()
        self.assertIs(service, dependencies.get_sync_service())
        self.assertIsInstance(dependencies.get_gateway(), InMemoryGateway)
        self.assertIsInstance(dependencies.get_settings_store(), InMemorySettingsStore)
        self.assertEqual(
            dependencies.get_settings_store().get("coupleId"), service.couple_id
        )

    @patch("backend.dependencies.get_settings")
    def test_retry_policy_from_settings(self, mock_settings):
        mock_settings.return_value = _in_memory_settings()
        policy = dependencies.get_retry_policy()
        self.assertEqual(policy.max_attempts, 2)
        self.assertEqual(policy.max_delay, 1.0)


if __name__ == "__main__":
    unittest.main()
