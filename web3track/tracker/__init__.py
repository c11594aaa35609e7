"""Block tracking, log filters and chain reorganisation handling."""