"""Attribution and reward settlement service for the k-factor growth loops."""
