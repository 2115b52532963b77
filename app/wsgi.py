from app.reque import create_app

app = create_app()
