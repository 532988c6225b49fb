"""
Module entry point for: python -m ocr_pipeline

Allows running the pipeline directly as a module:
    python -m ocr_pipeline submit <zip_path>
    python -m ocr_pipeline retry <job_id>
    python -m ocr_pipeline serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
