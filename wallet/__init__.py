"""Balance service for the chat-bot wallet: passcodes, transactions and the HTTP surface."""
