"""
HTML pages rendered by the browser callback.
"""

from pathlib import Path
from jinja2 import Environment, FileSystemLoader

_template_dir = Path(__file__).parent / "templates"
_env = Environment(
    loader=FileSystemLoader(_template_dir),
    autoescape=True,
)


def error_page(error: str, error_description: str = "", retry_url: str = "") -> str:
    """Generate an error page HTML."""
    template = _env.get_template("error.jinja2")
    return template.render(
        error=error,
        error_description=error_description,
        retry_url=retry_url,
    )
