# Data models
