from codex_sessions.cli.main import app

if __name__ == "__main__":
    app()
