from unittest.mock import patch

import pytest
import sqlalchemy as sa

from dealerbooks.auth import authenticate
from dealerbooks.cli import create_user, main
from dealerbooks.db import Organization, Profile


class TestCreateUser:
    def test_creates_org_profile_and_token(self, engine, session):
        result = create_user(engine, "anna@bilhallen.se", "Bilhallen AB", full_name="Anna")

        profile = authenticate(session, f"Bearer {result['token']}")
        assert profile.user_id == result["user_id"]
        assert profile.organization.name == "Bilhallen AB"
        assert profile.role == "user"

    def test_reuses_existing_organization(self, engine, session):
        create_user(engine, "anna@bilhallen.se", "Bilhallen AB")
        create_user(engine, "bo@bilhallen.se", "Bilhallen AB", role="admin")

        assert len(session.scalars(sa.select(Organization)).all()) == 1
        assert len(session.scalars(sa.select(Profile)).all()) == 2

    def test_duplicate_email(self, engine):
        create_user(engine, "anna@bilhallen.se", "Bilhallen AB")
        with pytest.raises(ValueError, match="already exists"):
            create_user(engine, "anna@bilhallen.se", "Bilhallen AB")


class TestMain:
    def test_init_db(self, tmp_path, monkeypatch, capsys):
        db_path = tmp_path / "cli.db"
        monkeypatch.setenv("DATABASE_PATH", str(db_path))

        with patch("dealerbooks.cli.configure_logging"):
            main(["init-db"])

        assert db_path.exists()
        assert "Database initialized" in capsys.readouterr().out

    def test_create_user_prints_token(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))

        with patch("dealerbooks.cli.configure_logging"):
            main(["create-user", "--email", "anna@bilhallen.se", "--organization", "Bilhallen AB"])

        out = capsys.readouterr().out
        assert "User created!" in out
        assert "API token" in out

    def test_create_user_duplicate_exits(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))
        args = ["create-user", "--email", "anna@bilhallen.se", "--organization", "Bilhallen AB"]

        with patch("dealerbooks.cli.configure_logging"):
            main(args)
            with pytest.raises(SystemExit) as exc_info:
                main(args)

        assert exc_info.value.code == 1
        assert "already exists" in capsys.readouterr().out

    def test_serve_runs_uvicorn(self, tmp_path, monkeypatch):
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "cli.db"))

        with patch("dealerbooks.cli.configure_logging"), patch("uvicorn.run") as mock_run:
            main(["serve", "--port", "9001"])

        assert mock_run.call_args.kwargs["port"] == 9001
        assert mock_run.call_args.kwargs["host"] == "127.0.0.1"
