"""concierge init: create the deployment database and config.

Creates:
  concierge.db             : schema, migrations and the vec index for the
                             configured embedding model
  concierge.yaml           : per-deployment config (retrieval, limits, ...)
  ~/.concierge/config.yaml : global model config (created once, mode 0o600)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from concierge.config import ConfigError, ensure_global_config, load_config
from concierge.db.connection import Database
from concierge.db.schema import initialize
from concierge.db.vectors import ensure_vec_table, model_to_slug
from concierge.errors import DimensionMismatchError

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")

_PROJECT_YAML = """\
# Concierge deployment configuration.
# API keys are read from environment variables, never from this file.

retrieval:
  top_k_retrieve: 20
  top_n_return: 8
  max_chunks_per_doc: 2
  score_threshold: 0.7

limits:
  max_docs: 20
  max_chunks: 2000
  max_messages_per_session: 30

messaging:
  from_number: ""
"""


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
) -> None:
    """Create concierge.db and concierge.yaml in PROJECT_DIR."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    yaml_path = project_dir / "concierge.yaml"
    if yaml_path.exists():
        console.print("  [dim]·[/] concierge.yaml (kept)")
    else:
        yaml_path.write_text(_PROJECT_YAML, encoding="utf-8")
        console.print("  [green]✓[/] concierge.yaml")

    cfg_path = ensure_global_config()
    console.print(f"  [green]✓[/] {cfg_path} (global config)")

    try:
        config = load_config(project_dir)
    except ConfigError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from exc

    db_path = project_dir / "concierge.db"
    conn = Database(db_path).connect()
    try:
        initialize(conn)
        table = ensure_vec_table(
            conn, model_to_slug(config.embedding.model), config.embedding.dimensions
        )
    except DimensionMismatchError as exc:
        console.print(
            f"[red]Error:[/] {exc}\n"
            "  The existing index was built with a different embedding.dimensions.\n"
            "  Restore the previous value in concierge.yaml."
        )
        raise typer.Exit(1) from exc
    finally:
        conn.close()
    console.print(f"  [green]✓[/] concierge.db ({table}, {config.embedding.dimensions} dims)")

    console.print("\n[bold green]✓ Concierge initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. concierge tenant add <id> --name <business>   (register a business)")
    console.print("  2. concierge ingest <id> --text/--url/--file      (add knowledge)")
    console.print("  3. concierge ask <id> <question>                 (preview answers)")
