import os
from craftsmart import create_app
from craftsmart.extensions import db

app = create_app()

if __name__ == "__main__":
    host = os.getenv("FLASK_HOST", "0.0.0.0")
    port = int(os.getenv("FLASK_PORT", "5000"))
    debug = app.config.get("ENV") == "dev"

    if debug:
        # Local SQLite convenience; deployed databases go through `flask db upgrade`
        with app.app_context():
            db.create_all()

    app.run(host=host, port=port, debug=debug)
