"""Browser side of the bridge: drains the mailbox into a Chromium tab over DevTools."""
