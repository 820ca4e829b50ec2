"""Cross-cutting primitives shared by every kbchat component."""
