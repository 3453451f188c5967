from app.opsdesk import create_app

app = create_app()
