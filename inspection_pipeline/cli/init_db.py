"""Initialize the pipeline database."""

import typer
from rich.console import Console
from sqlalchemy.exc import SQLAlchemyError

from inspection_pipeline.config import get_settings
from inspection_pipeline.db.models import Base
from inspection_pipeline.db.session import create_db_engine, init_schema


app = typer.Typer(name="init-db", help="Initialize the pipeline database")
console = Console()


@app.command()
def init() -> None:
    """Create all tables that do not exist yet."""
    console.print("\n[bold cyan]📦 Initializing Database[/bold cyan]\n")

    settings = get_settings()
    console.print(f"[bold]Database URL:[/bold] {settings.database_url}")

    try:
        engine = create_db_engine(settings.database_url)
        init_schema(engine)
    except SQLAlchemyError as e:
        console.print(f"\n[red]❌ Database initialization failed:[/red] {e}\n")
        raise typer.Exit(1)

    console.print("\n[green]✅ Database initialized successfully![/green]\n")
    console.print("Tables created:")
    for table in Base.metadata.sorted_tables:
        console.print(f"  - {table.name}")


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Drop every table and recreate the schema."""
    if not yes:
        typer.confirm("This will delete all data. Are you sure?", abort=True)

    console.print("\n[bold yellow]⚠️  Resetting Database[/bold yellow]\n")

    settings = get_settings()

    try:
        engine = create_db_engine(settings.database_url)
        Base.metadata.drop_all(engine)
    except SQLAlchemyError as e:
        console.print(f"\n[red]❌ Database reset failed:[/red] {e}\n")
        raise typer.Exit(1)

    console.print("[green]✅ Database reset complete[/green]\n")

    init()


if __name__ == "__main__":
    app()
