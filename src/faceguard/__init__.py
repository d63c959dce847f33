"""FaceGuard: face enrollment and authentication core."""
