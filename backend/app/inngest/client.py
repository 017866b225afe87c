"""
Inngest client shared by the scheduled jobs and event senders.
"""

import os
import logging

import inngest

logger = logging.getLogger(__name__)

inngest_client = inngest.Inngest(
    app_id=os.getenv("INNGEST_APP_ID", "affiliate-engine"),
    logger=logger,
    is_production=os.getenv("INNGEST_DEV", "0") != "1",
)
