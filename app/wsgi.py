from app.pdms import create_app

app = create_app()
