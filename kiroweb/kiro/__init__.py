"""kiro-cli integration: binary, conversation log, message adapter."""
