# esparrier_control/__main__.py
from .esparrierctl import app

app(prog_name="esparrierctl")
