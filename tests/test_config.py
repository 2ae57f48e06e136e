from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from relaybot.config import load_config, worker_settings


class ConfigTest(unittest.TestCase):
    def write(self, root: Path, text: str) -> Path:
        config_path = root / "relaybot.yaml"
        config_path.write_text(text.strip(), encoding="utf-8")
        return config_path

    def test_load_config(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            config_path = self.write(
                root,
                """
workers:
  min: 2
  max: 5
cache:
  location: "redis.internal:6380"
  username: relay
  password: secret
  ssl: true
llm_clients:
  local:
    engine: Ollama
    base_url: http://localhost:11434/
    model: llama3.2
  agent:
    engine: digitalocean
    base_url: https://agent.example
    timeout: 1500
    headers:
      X-Team: bots
    auth:
      bearer: token-123
logging:
  path: ./logs/relaybot.log
  level: debug
""",
            )
            config = load_config(config_path)

            self.assertEqual(config.workers.min, 2)
            self.assertEqual(config.workers.max, 5)
            self.assertEqual(config.workers.max_restarts, 3)
            self.assertEqual(config.cache.url, "rediss://redis.internal:6380")
            self.assertEqual(config.cache.username, "relay")
            self.assertEqual(config.notify.channel, "discord")

            local = config.llm_clients["local"]
            self.assertEqual(local.engine, "ollama")
            self.assertEqual(local.base_url, "http://localhost:11434")
            self.assertEqual(local.timeout, 30000)
            self.assertIsNone(local.auth)

            agent = config.llm_clients["agent"]
            self.assertEqual(agent.timeout, 1500)
            self.assertEqual(agent.headers, {"X-Team": "bots"})
            self.assertEqual(agent.auth.bearer, "token-123")

            self.assertEqual(config.logging.level, "DEBUG")
            self.assertEqual(config.logging.path.resolve(), (root / "logs" / "relaybot.log").resolve())

    def test_defaults(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config = load_config(
                self.write(
                    Path(temp_dir),
                    """
cache:
  location: redis://localhost:6379/0
llm_clients:
  local:
    engine: ollama
    base_url: http://localhost:11434
""",
                )
            )
            self.assertEqual((config.workers.min, config.workers.max), (1, 10))
            self.assertEqual(config.cache.url, "redis://localhost:6379/0")
            self.assertIsNone(config.logging.path)
            self.assertIsNone(config.llm_clients["local"].model)

    def test_rejects_invalid_worker_bounds(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config_path = self.write(
                Path(temp_dir),
                """
workers:
  min: 3
  max: 2
cache:
  location: localhost:6379
llm_clients:
  local:
    engine: ollama
    base_url: http://localhost:11434
""",
            )
            with self.assertRaisesRegex(ValueError, "workers.max"):
                load_config(config_path)

    def test_requires_cache_and_clients(self) -> None:
        with TemporaryDirectory() as temp_dir:
            root = Path(temp_dir)
            with self.assertRaisesRegex(ValueError, "root.cache"):
                load_config(self.write(root, "llm_clients: {}"))
            with self.assertRaisesRegex(ValueError, "llm_clients"):
                load_config(self.write(root, "cache:\n  location: localhost:6379\nllm_clients: {}"))
            with self.assertRaisesRegex(ValueError, "llm_clients.local.base_url"):
                load_config(
                    self.write(
                        root,
                        "cache:\n  location: localhost:6379\nllm_clients:\n  local:\n    engine: ollama",
                    )
                )

    def test_worker_settings_carry_shared_config(self) -> None:
        with TemporaryDirectory() as temp_dir:
            config = load_config(
                self.write(
                    Path(temp_dir),
                    """
cache:
  location: localhost:6379
notify:
  channel: relay-events
llm_clients:
  local:
    engine: ollama
    base_url: http://localhost:11434
""",
                )
            )
            settings = worker_settings(config, "abc123")
            self.assertEqual(settings.worker_id, "abc123")
            self.assertEqual(settings.notify_channel, "relay-events")
            self.assertIs(settings.cache, config.cache)
            self.assertEqual(list(settings.llm_clients), ["local"])


if __name__ == "__main__":
    unittest.main()
