"""Secret and key material shared by the cpu client components."""
