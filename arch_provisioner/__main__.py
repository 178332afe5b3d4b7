# arch_provisioner/__main__.py
from arch_provisioner.cli import app


def main():
    """
    Main application
    """
    app()


if __name__ == "__main__":
    main()
