import io
import tempfile
import unittest
from pathlib import Path

from chat_client import cli, credentials_store
from chat_gateway.auth import issue_token


class ClientCliTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.creds = Path(self._tmp.name) / "credentials.json"
        self.out = io.StringIO()
        self.err = io.StringIO()

    def tearDown(self):
        self._tmp.cleanup()

    def _run(self, *argv: str) -> int:
        return cli.main(["--credentials", str(self.creds), *argv], output=self.out, errors=self.err)

    def test_login_saves_credentials(self):
        token = issue_token("alice", "secret")

        exit_code = self._run("login", "--url", "http://127.0.0.1:8080", "--token", token)

        self.assertEqual(exit_code, 0)
        self.assertIn("alice", self.out.getvalue())
        self.assertEqual(
            credentials_store.load_credentials(self.creds),
            {"base_url": "http://127.0.0.1:8080", "token": token},
        )

    def test_commands_require_login(self):
        for argv in (("partners",), ("history", "bob"), ("send", "bob", "hi"), ("listen",)):
            with self.subTest(argv=argv):
                self.assertEqual(self._run(*argv), 2)
        self.assertIn("not logged in", self.err.getvalue())

    def test_send_needs_text_or_image(self):
        credentials_store.save_credentials("http://127.0.0.1:9", "tok", self.creds)
        self.assertEqual(self._run("send", "bob"), 2)
        self.assertIn("nothing to send", self.err.getvalue())

    def test_unreachable_gateway_reports_error(self):
        credentials_store.save_credentials("http://127.0.0.1:9", issue_token("alice", "s"), self.creds)

        exit_code = self._run("partners")

        self.assertEqual(exit_code, 1)
        self.assertTrue(self.err.getvalue().startswith("error: "))


if __name__ == "__main__":
    unittest.main()
