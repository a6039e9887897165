from spotsh.cli import app

app(prog_name="spotsh")
