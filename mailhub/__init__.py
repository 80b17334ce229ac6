"""mailhub: unified mailbox provider layer over Gmail and Microsoft Graph."""
