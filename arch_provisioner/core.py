# core.py
from typing import Optional
from arch_provisioner.utils.logger import RichAppLogger

# A global variable to hold the initialized logger wrapper
# It starts as None and will be set by the CLI callback
app_logger: Optional[RichAppLogger] = None
