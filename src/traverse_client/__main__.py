from traverse_client.cli import app

if __name__ == "__main__":  # pragma: no cover
    app(prog_name="traverse")
