"""Allow ``python -m backup_runctl``."""
from backup_runctl.cli import main

main()
